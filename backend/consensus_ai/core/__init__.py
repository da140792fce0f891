"""
Core infrastructure: configuration, logging, errors, metrics, tracing,
Redis, rate limiting and middleware.
"""
