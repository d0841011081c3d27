"""
Storage layer for usage-sentinel.

SQLite persistence for budgets, budget alerts, signal events and settings.
"""
