"""
Core Data Models for Krib Ledger

These models define the schemas for every ledger row and derived value
flowing through the system. They are designed to:
1. Mirror the rows of the external ledger store one-to-one
2. Keep money as Decimal end to end
3. Be serializable for storage and logging

DESIGN DECISION: Read models (Expense, Share) accept whatever the store
returns, including odd amounts. Validation belongs to the write path
(ExpenseDraft + ExpenseValidator), not to balance computation.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# One minor currency unit. Anything closer to zero than this is settled.
BALANCE_EPSILON = Decimal("0.01")

SETTLEMENT_DESCRIPTION = "Settlement"

UNKNOWN_MEMBER_NAME = "Unknown"

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# LEDGER ROWS
# =============================================================================

class Member(BaseModel):
    """
    A household member.

    Owned by the surrounding application; the ledger only reads it.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    user_id: str = Field(
        ...,
        min_length=1,
        description="Opaque, stable member identifier"
    )
    display_name: str = Field(
        default=UNKNOWN_MEMBER_NAME,
        description="Name shown next to balances"
    )


class Expense(BaseModel):
    """
    Money paid by one member on behalf of some subset of members.

    CRITICAL: Expenses are never hard-deleted. Setting is_settled
    removes the row from every future balance computation while
    keeping it as history.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Expense ID (client-generated for settlements)"
    )
    household_id: Optional[str] = None
    list_id: Optional[str] = Field(
        default=None,
        description="Sub-ledger ('pot') this expense belongs to, if any"
    )
    payer_id: str = Field(
        ...,
        description="Member who paid"
    )
    amount: Decimal = Field(
        ...,
        description="Amount paid"
    )
    description: str = Field(
        default="",
        max_length=200
    )
    created_at: datetime = Field(default_factory=utcnow)
    is_settled: bool = False
    settled_at: Optional[datetime] = None
    version: int = Field(
        default=0,
        ge=0,
        description="Bumped on every update; used for optimistic concurrency"
    )

    @model_validator(mode='after')
    def fill_settled_at(self) -> 'Expense':
        """A settled expense always carries the moment it was settled."""
        if self.is_settled and self.settled_at is None:
            self.settled_at = utcnow()
        return self

    def is_settlement(self, description: str = SETTLEMENT_DESCRIPTION) -> bool:
        """Whether this expense records a paid transfer (see settings.settlement_description)."""
        return self.description == description


class Share(BaseModel):
    """How much of one expense one member owes."""

    expense_id: UUID
    user_id: str
    owed_amount: Decimal = Field(
        ...,
        description="Owed part of the expense (non-negative on the write path)"
    )


# =============================================================================
# DERIVED VALUES
# =============================================================================

class Balance(BaseModel):
    """
    A member's net position across active expenses.

    Positive net: the household owes this member (creditor).
    Negative net: this member owes the household (debtor).
    """

    user_id: str
    display_name: str = UNKNOWN_MEMBER_NAME
    paid: Decimal = Decimal("0")
    consumed: Decimal = Decimal("0")
    epsilon: Decimal = Field(
        default=BALANCE_EPSILON,
        gt=0,
        exclude=True,
        description="Distance from zero that still counts as settled"
    )

    @property
    def net(self) -> Decimal:
        return self.paid - self.consumed

    @property
    def is_creditor(self) -> bool:
        return self.net > self.epsilon

    @property
    def is_debtor(self) -> bool:
        return self.net < -self.epsilon

    @property
    def is_settled_up(self) -> bool:
        return not (self.is_creditor or self.is_debtor)

    def format_net(self, currency_symbol: str = "€") -> str:
        """Format like '+€20.00', '-€10.00' or '€0.00'."""
        net = self.net.quantize(CENT)
        if self.is_settled_up:
            return f"{currency_symbol}0.00"
        sign = "+" if net > 0 else "-"
        return f"{sign}{currency_symbol}{abs(net):.2f}"


class SettlementTransfer(BaseModel):
    """
    A proposed payment from a debtor to a creditor.

    Ephemeral: exists only as a plan until a member commits it.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_user_id: str = Field(..., alias="from")
    to_user_id: str = Field(..., alias="to")
    amount: Decimal = Field(..., gt=0)

    @model_validator(mode='after')
    def validate_parties(self) -> 'SettlementTransfer':
        if self.from_user_id == self.to_user_id:
            raise ValueError("A member cannot settle with themselves")
        return self

    @property
    def display_amount(self) -> Decimal:
        """The amount rounded to the cent, for showing to members."""
        return self.amount.quantize(CENT, rounding=ROUND_HALF_UP)

    def format_amount(self, currency_symbol: str = "€") -> str:
        return f"{currency_symbol}{self.display_amount}"


class ExpenseImpact(BaseModel):
    """Effect of a single expense on a single member."""

    user_id: str
    paid: Decimal = Decimal("0")
    consumed: Decimal = Decimal("0")

    @property
    def net(self) -> Decimal:
        return self.paid - self.consumed

    @property
    def is_payer(self) -> bool:
        return self.paid > 0


class LedgerSummary(BaseModel):
    """Everything a balance screen renders for one household or list."""

    household_id: Optional[str] = None
    list_id: Optional[str] = None
    balances: list[Balance] = Field(default_factory=list)
    transfers: list[SettlementTransfer] = Field(default_factory=list)
    total_spent: Decimal = Decimal("0")
    last_settled_at: Optional[datetime] = None
    computed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_settled_up(self) -> bool:
        return not self.transfers

    def balance_for(self, user_id: str) -> Optional[Balance]:
        for balance in self.balances:
            if balance.user_id == user_id:
                return balance
        return None


# =============================================================================
# WRITE PATH
# =============================================================================

class ExpenseDraft(BaseModel):
    """
    A new expense as entered by a member, before it is written.

    weights maps user_id to a share count: {"a": 1, "b": 2} means b
    consumes twice as much as a. Members with weight 0 are left out.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    payer_id: str = Field(..., min_length=1)
    amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=2,
        description="Amount paid (must be positive)"
    )
    description: str = Field(..., max_length=200)
    weights: dict[str, int] = Field(default_factory=dict)
    household_id: Optional[str] = None
    list_id: Optional[str] = None

    @field_validator('weights')
    @classmethod
    def validate_weights(cls, v: dict[str, int]) -> dict[str, int]:
        for user_id, weight in v.items():
            if weight < 0:
                raise ValueError(f"Weight for {user_id} cannot be negative")
        return v

    @property
    def total_weight(self) -> int:
        return sum(self.weights.values())


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'inconsistent')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = None
    details: dict = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """
    Result of the two-stage expense validation.

    Stage 1: Schema validation (amount, description, weights)
    Stage 2: Semantic validation (roster membership, sanity limits)
    """

    validated_at: datetime = Field(default_factory=utcnow)
    schema_valid: bool
    semantic_valid: bool
    is_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")
