"""Rate limiting adapters.

This package provides the backing stores behind the request rate limiter: a
Redis sorted-set sliding log shared by every worker, and an in-memory
fixed-window counter for single-process development setups.
"""
