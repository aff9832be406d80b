from __future__ import annotations

__all__ = [
    "estimate",
    "load_pricing",
    "reserve",
    "settle",
    "release",
    "sweep_expired_reservations",
    "purchase_credits",
    "adjust_credits",
    "get_balance",
    "list_transactions",
    "usage_for_period",
    "evaluate_overage",
]

from server.creditmeter.ledger.estimator import estimate
from server.creditmeter.ledger.pricing import load_pricing
from server.creditmeter.ledger.reservations import reserve
from server.creditmeter.ledger.settlement import release, settle, sweep_expired_reservations
from server.creditmeter.ledger.accounts import adjust_credits, purchase_credits
from server.creditmeter.ledger.transactions import get_balance, list_transactions
from server.creditmeter.ledger.usage import usage_for_period
from server.creditmeter.ledger.overage import evaluate_overage
