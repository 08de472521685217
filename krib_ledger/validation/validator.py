"""
Expense Validation

DESIGN DECISION: Validation lives on the write path only.

Balance computation sums whatever is in the ledger and never rejects a
row. Everything that can go wrong with an expense is caught here,
before it is written, in two stages:

STAGE 1 - SCHEMA VALIDATION:
- Description present
- At least one member shares in the expense

STAGE 2 - SEMANTIC VALIDATION:
- Every sharing member belongs to the household
- Payer belongs to the household
- Amount is not absurdly high

Rows already in the ledger are checked with check_share_consistency(),
which only reports. The caller logs the result and carries on.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from krib_ledger.config import LedgerSettings, get_settings
from krib_ledger.models.ledger import (
    BALANCE_EPSILON,
    CENT,
    Expense,
    ExpenseDraft,
    Member,
    Share,
    ValidationIssue,
    ValidationResult,
)


def split_by_weights(amount: Decimal, weights: Mapping[str, int]) -> dict[str, Decimal]:
    """
    Split an amount over members in proportion to their weights.

    Every part is rounded down to the cent; the cents left over go one
    each to the last participants, so the parts always add up to exactly
    `amount` (10.00 over three equal weights: 3.33, 3.33, 3.34).
    Members with weight 0 are left out.
    """
    participants = [(user_id, w) for user_id, w in weights.items() if w > 0]
    if not participants:
        return {}

    total_weight = sum(w for _, w in participants)
    parts = {
        user_id: (amount * w / total_weight).quantize(CENT, rounding=ROUND_DOWN)
        for user_id, w in participants
    }

    leftover = int((amount - sum(parts.values())) / CENT)
    if leftover:
        for user_id, _ in participants[-leftover:]:
            parts[user_id] += CENT

    return parts


def check_share_consistency(
    expenses: Iterable[Expense],
    shares: Iterable[Share],
    epsilon: Decimal = BALANCE_EPSILON,
) -> list[ValidationIssue]:
    """
    Report expenses whose shares don't add up to the amount.

    Rounding drift of up to `epsilon` per share is tolerated. Shares that
    reference an expense not in `expenses` are reported as orphans.
    """
    owed: dict = defaultdict(Decimal)
    counts: dict = defaultdict(int)
    for share in shares:
        owed[share.expense_id] += share.owed_amount
        counts[share.expense_id] += 1

    issues = []
    known_ids = set()

    for expense in expenses:
        known_ids.add(expense.id)
        total = owed.get(expense.id, Decimal("0"))
        tolerance = epsilon * max(1, counts.get(expense.id, 0))
        diff = expense.amount - total

        if abs(diff) > tolerance:
            issues.append(ValidationIssue(
                field="shares",
                issue_type="inconsistent",
                message=(
                    f"Shares of expense {expense.id} add up to {total}, "
                    f"expense amount is {expense.amount}"
                ),
                severity="warning",
                details={
                    "expense_id": str(expense.id),
                    "amount": str(expense.amount),
                    "shares_total": str(total),
                    "difference": str(diff),
                },
            ))

    for expense_id in owed:
        if expense_id not in known_ids:
            issues.append(ValidationIssue(
                field="shares",
                issue_type="orphan",
                message=f"{counts[expense_id]} share(s) reference unknown expense {expense_id}",
                severity="warning",
                details={
                    "expense_id": str(expense_id),
                    "shares_total": str(owed[expense_id]),
                },
            ))

    return issues


class ExpenseValidator:
    """
    Validates new expenses through a two-stage pipeline.

    Stage 1: Schema validation (needs nothing but the draft)
    Stage 2: Semantic validation (needs the household roster)
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def _validate_schema(
        self,
        draft: ExpenseDraft,
    ) -> tuple[bool, list[ValidationIssue]]:
        issues = []

        if not draft.description:
            issues.append(ValidationIssue(
                field="description",
                issue_type="missing",
                message="A description is required",
                severity="error",
                suggested_fix="Say what the money was spent on",
            ))

        if draft.total_weight == 0:
            issues.append(ValidationIssue(
                field="weights",
                issue_type="missing",
                message="Select at least one member who shares in this expense",
                severity="error",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_semantic(
        self,
        draft: ExpenseDraft,
        members: list[Member],
    ) -> tuple[bool, list[ValidationIssue]]:
        issues = []
        roster = {m.user_id for m in members}

        unknown = sorted(
            user_id for user_id, w in draft.weights.items()
            if w > 0 and user_id not in roster
        )
        if unknown:
            issues.append(ValidationIssue(
                field="weights",
                issue_type="unknown_member",
                message=f"Not a household member: {', '.join(unknown)}",
                severity="error",
                details={"user_ids": unknown},
            ))

        if draft.payer_id not in roster:
            issues.append(ValidationIssue(
                field="payer_id",
                issue_type="unknown_member",
                message=f"Payer {draft.payer_id} is not a household member",
                severity="warning",
                suggested_fix="Check who paid",
            ))

        if draft.amount > self._settings.max_expense_amount:
            symbol = self._settings.currency_symbol
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({symbol}{draft.amount:,.2f}) seems unusually high",
                severity="warning",
                suggested_fix="Please verify this amount is correct",
            ))

        sharers = {user_id for user_id, w in draft.weights.items() if w > 0}
        if sharers == {draft.payer_id}:
            issues.append(ValidationIssue(
                field="weights",
                issue_type="no_effect",
                message="Only the payer shares in this expense; balances won't change",
                severity="info",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def validate(
        self,
        draft: ExpenseDraft,
        members: list[Member],
    ) -> ValidationResult:
        """
        Run full two-stage validation pipeline.

        Stage 2 only runs when stage 1 passes.
        """
        all_issues = []

        schema_valid, schema_issues = self._validate_schema(draft)
        all_issues.extend(schema_issues)

        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(draft, members)
            all_issues.extend(semantic_issues)

        warnings = [i.message for i in all_issues if i.severity == "warning"]

        return ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            is_valid=schema_valid and semantic_valid,
            issues=all_issues,
            warnings=warnings,
        )
