"""
Configuration for usage-sentinel.
"""
