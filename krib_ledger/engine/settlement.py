"""
Settlement Planning

Turns a balance vector into "who pays whom how much".

DESIGN DECISION: Greedy largest-debtor / largest-creditor matching.
The optimal minimum-transfer plan is NP-hard in general; greedy is
simple to audit, and for single-digit households it almost always
produces the minimal plan anyway. Do not swap it for the optimal
algorithm without a product decision - members compare plans by hand.

Transfer amounts are exact. Shares are often not whole cents (a 10.00
expense over three members), and rounding each transfer would leave the
rounding error on the debtor. Round only when showing an amount
(SettlementTransfer.display_amount).

Planning is pure. Committing a transfer is a separate, explicit step
(see krib_ledger.orchestrator), which writes the records built by
build_settlement_records() back into the same ledger:

    Expense(payer = debtor, amount)  -> debtor's paid rises by amount
    Share(user = creditor, amount)   -> creditor's consumed rises by amount

so the original debt cancels algebraically on the next read.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from krib_ledger.models.ledger import (
    BALANCE_EPSILON,
    SETTLEMENT_DESCRIPTION,
    Balance,
    Expense,
    SettlementTransfer,
    Share,
)


def plan_settlements(
    balances: Iterable[Balance],
    epsilon: Decimal = BALANCE_EPSILON,
) -> list[SettlementTransfer]:
    """
    Reduce net balances to a list of pairwise transfers.

    1. Split into debtors (net < -epsilon) and creditors (net > epsilon).
    2. Debtors most-negative first, creditors largest first.
    3. Match the current debtor with the current creditor for the smaller
       of the two amounts; move on from whichever drops below epsilon.

    Returns transfers in the order they were matched. The input
    balances are not modified.
    """
    debtors = [[b.user_id, b.net] for b in balances if b.net < -epsilon]
    creditors = [[b.user_id, b.net] for b in balances if b.net > epsilon]

    debtors.sort(key=lambda d: d[1])
    creditors.sort(key=lambda c: c[1], reverse=True)

    transfers = []
    i = 0
    j = 0

    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]

        # Both sides are at least epsilon away from zero here
        amount = min(abs(debtor[1]), creditor[1])
        transfers.append(SettlementTransfer(
            from_user_id=debtor[0],
            to_user_id=creditor[0],
            amount=amount,
        ))

        debtor[1] += amount
        creditor[1] -= amount

        if abs(debtor[1]) < epsilon:
            i += 1
        if creditor[1] < epsilon:
            j += 1

    return transfers


def apply_transfers(
    balances: Iterable[Balance] | Mapping[str, Decimal],
    transfers: Iterable[SettlementTransfer],
) -> dict[str, Decimal]:
    """
    Net balances after every transfer has been paid.

    Paying raises the debtor's net and lowers the creditor's, exactly as
    committing the transfer to the ledger would.
    """
    if isinstance(balances, Mapping):
        nets = dict(balances)
    else:
        nets = {b.user_id: b.net for b in balances}

    for transfer in transfers:
        nets[transfer.from_user_id] = nets.get(transfer.from_user_id, Decimal("0")) + transfer.amount
        nets[transfer.to_user_id] = nets.get(transfer.to_user_id, Decimal("0")) - transfer.amount

    return nets


def build_settlement_records(
    transfer: SettlementTransfer,
    list_id: Optional[str] = None,
    household_id: Optional[str] = None,
    description: str = SETTLEMENT_DESCRIPTION,
    settlement_id: Optional[UUID] = None,
) -> tuple[Expense, Share]:
    """
    The two ledger rows that record a paid transfer.

    settlement_id becomes the expense id. Pass the same id when retrying
    a commit so the store recognises it as the same settlement; a new
    one is generated when it is omitted.
    """
    expense = Expense(
        id=settlement_id or uuid4(),
        household_id=household_id,
        list_id=list_id,
        payer_id=transfer.from_user_id,
        amount=transfer.amount,
        description=description,
    )
    share = Share(
        expense_id=expense.id,
        user_id=transfer.to_user_id,
        owed_amount=transfer.amount,
    )
    return expense, share
