"""
Command-line interface for usage-sentinel.
"""
