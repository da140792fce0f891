"""Metered multi-LLM consensus backend."""

__version__ = "1.0.0"
