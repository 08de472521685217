"""
Data Models Package

This package contains all Pydantic models used in Krib Ledger.
All data flowing through the system must conform to these schemas.
"""

from krib_ledger.models.ledger import (
    BALANCE_EPSILON,
    SETTLEMENT_DESCRIPTION,
    UNKNOWN_MEMBER_NAME,
    Balance,
    Expense,
    ExpenseDraft,
    ExpenseImpact,
    LedgerSummary,
    Member,
    SettlementTransfer,
    Share,
    ValidationIssue,
    ValidationResult,
)
from krib_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Constants
    "BALANCE_EPSILON",
    "SETTLEMENT_DESCRIPTION",
    "UNKNOWN_MEMBER_NAME",
    # Ledger models
    "Balance",
    "Expense",
    "ExpenseDraft",
    "ExpenseImpact",
    "LedgerSummary",
    "Member",
    "SettlementTransfer",
    "Share",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
