"""
Audit Logger

DESIGN DECISION: Every write to the shared ledger is logged.
Several members write to the same ledger from different devices, so
when a balance looks wrong the audit trail is how we explain it.

The audit logger:
- Always logs locally through structlog
- Optionally persists to an audit store
- Gracefully handles failures (a failed audit write never fails a ledger write)
- Supports correlation IDs to trace related events (e.g. both writes of
  one settlement)
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from krib_ledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from krib_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through the stdlib root logger at `level`."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. The audit store (for persistence and household visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("krib_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        elif event.severity == AuditSeverity.DEBUG:
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_expense_added(
        self,
        expense_id: UUID,
        payer_id: str,
        amount: Decimal,
        share_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_added(
            expense_id=expense_id,
            payer_id=payer_id,
            amount=amount,
            share_count=share_count,
            correlation_id=correlation_id,
        ))

    async def log_expense_rejected(
        self,
        payer_id: str,
        issues: list[dict],
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_rejected(
            payer_id=payer_id,
            issues=issues,
            correlation_id=correlation_id,
        ))

    async def log_expense_soft_deleted(
        self,
        expense_id: UUID,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.expense_soft_deleted(
            expense_id=expense_id,
            correlation_id=correlation_id,
        ))

    async def log_share_inconsistency(
        self,
        expense_id: str,
        message: str,
        details: dict,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Shares not adding up is logged, never raised."""
        await self.log(AuditEventBuilder.share_inconsistency(
            expense_id=expense_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_settlement_planned(
        self,
        scope: str,
        transfer_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_planned(
            scope=scope,
            transfer_count=transfer_count,
            correlation_id=correlation_id,
        ))

    async def log_settlement_committed(
        self,
        expense_id: UUID,
        transfer: dict,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_committed(
            expense_id=expense_id,
            transfer=transfer,
            correlation_id=correlation_id,
        ))

    async def log_settlement_failed(
        self,
        transfer: dict,
        stage: str,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_failed(
            transfer=transfer,
            stage=stage,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_settlement_compensated(
        self,
        expense_id: UUID,
        succeeded: bool,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.settlement_compensated(
            expense_id=expense_id,
            succeeded=succeeded,
            correlation_id=correlation_id,
        ))

    async def log_household_reset(
        self,
        household_id: str,
        list_id: Optional[str],
        settled_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.household_reset(
            household_id=household_id,
            list_id=list_id,
            settled_count=settled_count,
            correlation_id=correlation_id,
        ))

    async def log_storage_error(
        self,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.storage_error(
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., settling a debt).
    Pass it through all subsequent operations.
    """
    return uuid4()
