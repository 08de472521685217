"""Balance calculation and settlement planning."""

from krib_ledger.engine.balances import (
    active_only,
    compute_balances,
    expense_impact,
    last_settled_at,
    sorted_for_display,
    total_spent,
)
from krib_ledger.engine.settlement import (
    apply_transfers,
    build_settlement_records,
    plan_settlements,
)

__all__ = [
    "active_only",
    "apply_transfers",
    "build_settlement_records",
    "compute_balances",
    "expense_impact",
    "last_settled_at",
    "plan_settlements",
    "sorted_for_display",
    "total_spent",
]
