"""
Audit Models for Krib Ledger

Every write to the shared ledger is logged for audit purposes.
Several household members write to the same ledger from different
devices, so the audit trail is how a disputed balance gets explained.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Expenses
    EXPENSE_ADDED = "expense_added"
    EXPENSE_REJECTED = "expense_rejected"
    EXPENSE_SOFT_DELETED = "expense_soft_deleted"
    SHARE_INCONSISTENCY = "share_inconsistency"

    # Settlements
    SETTLEMENT_PLANNED = "settlement_planned"
    SETTLEMENT_COMMITTED = "settlement_committed"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_COMPENSATED = "settlement_compensated"
    HOUSEHOLD_RESET = "household_reset"

    # System events
    STORAGE_ERROR = "storage_error"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'expense', 'settlement', 'household')"
    )
    entity_id: Optional[str] = None

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., both writes of one settlement)"
    )

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.expense_added(expense_id, payer, amount, share_count, cid)
        event = AuditEventBuilder.settlement_committed(expense_id, transfer_dict, cid)
    """

    @staticmethod
    def expense_added(
        expense_id: UUID,
        payer_id: str,
        amount: Decimal,
        share_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_ADDED,
            entity_type="expense",
            entity_id=str(expense_id),
            correlation_id=correlation_id,
            description=f"Expense added: {payer_id} paid {amount:.2f}",
            details={
                "payer_id": payer_id,
                "amount": str(amount),
                "share_count": share_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_rejected(
        payer_id: str,
        issues: list[dict],
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="expense",
            correlation_id=correlation_id,
            description=f"Expense rejected with {len(issues)} issues",
            details={
                "payer_id": payer_id,
                "issues": issues,
            },
            is_user_action=True,
        )

    @staticmethod
    def expense_soft_deleted(
        expense_id: UUID,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_SOFT_DELETED,
            entity_type="expense",
            entity_id=str(expense_id),
            correlation_id=correlation_id,
            description="Expense marked as settled",
            is_user_action=True,
        )

    @staticmethod
    def share_inconsistency(
        expense_id: str,
        message: str,
        details: dict,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SHARE_INCONSISTENCY,
            severity=AuditSeverity.WARNING,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=correlation_id,
            description=message,
            details=details,
        )

    @staticmethod
    def settlement_planned(
        scope: str,
        transfer_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_PLANNED,
            severity=AuditSeverity.DEBUG,
            entity_type="household",
            entity_id=scope,
            correlation_id=correlation_id,
            description=f"Settlement plan computed with {transfer_count} transfers",
            details={"transfer_count": transfer_count},
        )

    @staticmethod
    def settlement_committed(
        expense_id: UUID,
        transfer: dict,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_COMMITTED,
            entity_type="settlement",
            entity_id=str(expense_id),
            correlation_id=correlation_id,
            description=(
                f"Settlement recorded: {transfer['from']} paid "
                f"{transfer['to']} {transfer['amount']}"
            ),
            details=transfer,
            is_user_action=True,
        )

    @staticmethod
    def settlement_failed(
        transfer: dict,
        stage: str,
        error_message: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="settlement",
            correlation_id=correlation_id,
            description=f"Settlement failed while writing the {stage}",
            details={**transfer, "stage": stage},
            error_message=error_message,
        )

    @staticmethod
    def settlement_compensated(
        expense_id: UUID,
        succeeded: bool,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SETTLEMENT_COMPENSATED,
            severity=AuditSeverity.WARNING if succeeded else AuditSeverity.CRITICAL,
            entity_type="settlement",
            entity_id=str(expense_id),
            correlation_id=correlation_id,
            description=(
                "Partial settlement rolled back"
                if succeeded
                else "Partial settlement could NOT be rolled back"
            ),
            details={"compensated": succeeded},
        )

    @staticmethod
    def household_reset(
        household_id: str,
        list_id: Optional[str],
        settled_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.HOUSEHOLD_RESET,
            entity_type="household",
            entity_id=household_id,
            correlation_id=correlation_id,
            description=f"Household balance reset: {settled_count} expenses settled",
            details={
                "list_id": list_id,
                "settled_count": settled_count,
            },
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def storage_error(
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"Ledger store error during {operation}",
            error_message=error_message,
            details={"operation": operation},
            correlation_id=correlation_id,
        )
