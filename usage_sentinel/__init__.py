"""
Usage Sentinel.

Background monitoring engine for AI coding assistant usage: budget checks,
anomaly signals, time-series downsampling and request throttling.
"""

__version__ = "0.1.0"
