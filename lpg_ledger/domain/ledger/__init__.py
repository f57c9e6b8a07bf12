"""
Ledger Engine Module - classification, balance folding and due tracking
"""
from lpg_ledger.domain.ledger.classifier import ClassifiedItems, classify, classify_item
from lpg_ledger.domain.ledger.balance import (
    balance_impact,
    running_balances,
    to_display_balance,
    balance_status,
)
from lpg_ledger.domain.ledger.dues import OverReturnWarning, apply_delta, reverse_delta, recompute_from_history

__all__ = [
    "ClassifiedItems",
    "classify",
    "classify_item",
    "balance_impact",
    "running_balances",
    "to_display_balance",
    "balance_status",
    "OverReturnWarning",
    "apply_delta",
    "reverse_delta",
    "recompute_from_history",
]
