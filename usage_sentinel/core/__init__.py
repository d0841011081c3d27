"""
Core modules for usage-sentinel.

This package contains the building blocks used by the route layer and the
workers: LTTB downsampling, token-bucket rate limiting, secret redaction and
the bounded event broadcaster.
"""
