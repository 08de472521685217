"""
Balance Calculation

DESIGN DECISION: Balances are a pure function of the ledger rows.
Nothing here talks to storage, logs, or raises on odd input. The caller
hands in rows that are already scoped (one household or one list) and
already filtered to active expenses; this module just adds them up.

    net = paid - consumed

Malformed rows (negative amounts, shares pointing at an expense that is
not in the input) are summed as given. Detecting them is the job of
krib_ledger.validation, which the orchestrator runs alongside.
"""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Optional

from krib_ledger.models.ledger import (
    BALANCE_EPSILON,
    UNKNOWN_MEMBER_NAME,
    Balance,
    Expense,
    ExpenseImpact,
    Member,
    Share,
)


ZERO = Decimal("0")


def compute_balances(
    expenses: Iterable[Expense],
    shares: Iterable[Share],
    members: Iterable[Member] = (),
    epsilon: Decimal = BALANCE_EPSILON,
) -> dict[str, Balance]:
    """
    Compute each participant's net balance.

    Every roster member gets an entry, even with no transactions.
    Payers and sharers missing from the roster (members who left the
    household) still get an entry, named "Unknown".

    Args:
        expenses: Active expenses in scope
        shares: Shares of those expenses
        members: Household roster
        epsilon: Distance from zero that counts as settled

    Returns:
        {user_id: Balance}, in roster order followed by unknown ids
        in the order they were first seen
    """
    names: dict[str, str] = {}
    paid: dict[str, Decimal] = {}
    consumed: dict[str, Decimal] = {}

    for member in members:
        names[member.user_id] = member.display_name
        paid[member.user_id] = ZERO
        consumed[member.user_id] = ZERO

    for expense in expenses:
        paid[expense.payer_id] = paid.get(expense.payer_id, ZERO) + expense.amount

    for share in shares:
        consumed[share.user_id] = consumed.get(share.user_id, ZERO) + share.owed_amount

    # Union of keys, keeping first-seen order
    user_ids = list(dict.fromkeys([*paid.keys(), *consumed.keys()]))

    return {
        user_id: Balance(
            user_id=user_id,
            display_name=names.get(user_id, UNKNOWN_MEMBER_NAME),
            paid=paid.get(user_id, ZERO),
            consumed=consumed.get(user_id, ZERO),
            epsilon=epsilon,
        )
        for user_id in user_ids
    }


def active_only(
    expenses: Iterable[Expense],
    shares: Iterable[Share],
) -> tuple[list[Expense], list[Share]]:
    """
    Drop settled expenses and the shares that belong to them.

    Shares whose expense is not in the input at all are kept: they are
    summed like everything else, and flagged by the consistency check.
    """
    expenses = list(expenses)
    settled_ids = {e.id for e in expenses if e.is_settled}
    active = [e for e in expenses if not e.is_settled]
    return active, [s for s in shares if s.expense_id not in settled_ids]


def total_spent(expenses: Iterable[Expense]) -> Decimal:
    """Sum of active expense amounts."""
    return sum((e.amount for e in expenses if not e.is_settled), ZERO)


def last_settled_at(expenses: Iterable[Expense]) -> Optional[datetime]:
    """When the ledger was last (partly) settled, or None if never."""
    dates = [e.settled_at for e in expenses if e.is_settled and e.settled_at]
    return max(dates) if dates else None


def expense_impact(expense: Expense, shares: Iterable[Share]) -> list[ExpenseImpact]:
    """
    Per-member effect of a single expense.

    The payer comes first; sharers follow in share order. A member who
    both paid and consumed gets one combined entry.
    """
    impacts: dict[str, ExpenseImpact] = {
        expense.payer_id: ExpenseImpact(user_id=expense.payer_id, paid=expense.amount),
    }
    for share in shares:
        if share.expense_id != expense.id:
            continue
        impact = impacts.setdefault(share.user_id, ExpenseImpact(user_id=share.user_id))
        impact.consumed += share.owed_amount
    return list(impacts.values())


def sorted_for_display(balances: Iterable[Balance]) -> list[Balance]:
    """Creditors first, then settled members, then debtors."""
    return sorted(balances, key=lambda b: b.net, reverse=True)
