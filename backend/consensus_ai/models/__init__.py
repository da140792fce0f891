"""
Pydantic models for the consensus service.
"""
