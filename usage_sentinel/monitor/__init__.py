"""
Background monitoring workers.

The budget monitor and the signal evaluator run on independent periodic
tick loops and record their findings in the relational store.
"""

from .budget_monitor import BudgetMonitor
from .rules import RULE_TYPES, SignalRule, build_rules
from .signal_evaluator import SignalEvaluator

__all__ = ["BudgetMonitor", "RULE_TYPES", "SignalEvaluator", "SignalRule", "build_rules"]
