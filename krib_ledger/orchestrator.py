"""
Main Orchestrator for Krib Ledger

This module ties the ledger store, the balance engine, validation and
the audit trail together, and defines the flows the app calls:
1. Summary (read rows → balances → settlement plan)
2. Add expense (validate → split → write expense → write shares)
3. Settle transfer (confirm → write settlement expense → write share)
4. Soft-delete one expense / reset a whole household

DESIGN DECISION: The orchestrator enforces the boundaries:
- Balances are recomputed on every read, never cached
- No settlement is written without explicit confirmation
- Nothing is hard-deleted
- Every write is audited

The store has no transactions. When the second write of a pair fails
(shares after an expense), the expense that did get written is
soft-deleted again so the ledger never keeps a half-written entry, and
the caller gets an error telling whether that cleanup worked.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog

from krib_ledger.audit import AuditLogger, configure_logging, create_correlation_id
from krib_ledger.config import LedgerSettings, get_settings, validate_all_settings
from krib_ledger.engine import (
    build_settlement_records,
    compute_balances,
    expense_impact,
    last_settled_at,
    plan_settlements,
    sorted_for_display,
    total_spent,
)
from krib_ledger.models.ledger import (
    Expense,
    ExpenseDraft,
    ExpenseImpact,
    LedgerSummary,
    SettlementTransfer,
    Share,
    ValidationResult,
)
from krib_ledger.services.storage import (
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)
from krib_ledger.validation import (
    ExpenseValidator,
    check_share_consistency,
    split_by_weights,
)


logger = structlog.get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ExpenseRejectedError(LedgerError):
    """The expense failed validation and was not written."""

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = [i.message for i in result.issues if i.severity == "error"]
        super().__init__("Expense rejected: " + "; ".join(messages))


class ConfirmationRequiredError(LedgerError):
    """A write that needs explicit member confirmation was not confirmed."""
    pass


class PartialWriteError(LedgerError):
    """
    The second write of an expense/share pair failed.

    compensated tells whether the expense that was written has been
    soft-deleted again. If it is False the ledger holds an expense
    without its shares and needs manual attention.
    """

    def __init__(self, message: str, expense_id: Optional[UUID], compensated: bool):
        self.expense_id = expense_id
        self.compensated = compensated
        super().__init__(message)


class SettlementCommitError(PartialWriteError):
    """
    Recording a settlement transfer failed; assume it did not happen.

    settlement_id is the id the commit was written under. Pass it to
    settle_transfer again to retry without risking a double payment.
    """

    def __init__(
        self,
        transfer: SettlementTransfer,
        stage: str,
        message: str,
        expense_id: Optional[UUID] = None,
        compensated: bool = True,
        settlement_id: Optional[UUID] = None,
    ):
        self.transfer = transfer
        self.stage = stage
        self.settlement_id = settlement_id
        super().__init__(message, expense_id, compensated)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _transfer_details(transfer: SettlementTransfer) -> dict:
    return {
        "from": transfer.from_user_id,
        "to": transfer.to_user_id,
        "amount": str(transfer.amount),
    }


class LedgerService:
    """
    The ledger flows, on top of any LedgerStorageInterface.

    Methods are async because the store is remote. The engine functions
    they call are pure and synchronous.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[ExpenseValidator] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._storage = storage
        self._audit_logger = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._validator = validator or ExpenseValidator(self._settings)

    def _household(self, household_id: Optional[str]) -> str:
        household_id = household_id or self._settings.default_household_id
        if not household_id:
            raise LedgerError("No household given and no default household configured")
        return household_id

    # -- reads ---------------------------------------------------------------

    async def get_summary(
        self,
        household_id: Optional[str] = None,
        list_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> LedgerSummary:
        """
        Balances and settlement plan for a household, or one list in it.

        Shares that don't add up to their expense are logged and
        otherwise ignored; the epsilon absorbs the drift.
        """
        correlation_id = correlation_id or create_correlation_id()
        household_id = self._household(household_id)

        try:
            all_expenses = await self._storage.list_expenses(
                household_id=household_id,
                list_id=list_id,
                include_settled=True,
            )
            active = [e for e in all_expenses if not e.is_settled]
            shares = await self._storage.list_shares(e.id for e in active)
            members = await self._storage.list_members(household_id)
        except StorageError as e:
            await self._audit_logger.log_storage_error(
                operation="read_ledger",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        for issue in check_share_consistency(active, shares, self._settings.balance_epsilon):
            await self._audit_logger.log_share_inconsistency(
                expense_id=issue.details.get("expense_id", ""),
                message=issue.message,
                details=issue.details,
                correlation_id=correlation_id,
            )

        balances = compute_balances(active, shares, members, self._settings.balance_epsilon)
        transfers = plan_settlements(balances.values(), self._settings.balance_epsilon)

        await self._audit_logger.log_settlement_planned(
            scope=list_id or household_id,
            transfer_count=len(transfers),
            correlation_id=correlation_id,
        )

        return LedgerSummary(
            household_id=household_id,
            list_id=list_id,
            balances=sorted_for_display(balances.values()),
            transfers=transfers,
            total_spent=total_spent(active),
            last_settled_at=last_settled_at(all_expenses),
        )

    async def get_expense_impact(self, expense_id: UUID) -> tuple[Expense, list[ExpenseImpact]]:
        """What one expense did to each member's balance."""
        expense = await self._storage.get_expense(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense not found: {expense_id}")
        shares = await self._storage.list_shares([expense_id])
        return expense, expense_impact(expense, shares)

    # -- writes --------------------------------------------------------------

    @staticmethod
    def _is_same_settlement(existing: Optional[Expense], expense: Expense) -> bool:
        """Whether a stored row is this settlement, still active."""
        return (
            existing is not None
            and not existing.is_settled
            and existing.payer_id == expense.payer_id
            and existing.amount == expense.amount
            and existing.description == expense.description
            and existing.household_id == expense.household_id
            and existing.list_id == expense.list_id
        )

    async def _compensate(self, expense_id: UUID) -> bool:
        """Soft-delete a half-written expense. Returns True on success."""
        try:
            await self._storage.mark_expense_settled(expense_id, _now())
            return True
        except StorageError:
            return False

    async def add_expense(
        self,
        draft: ExpenseDraft,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Expense, list[Share]]:
        """
        Validate, split and write a new expense.

        Raises:
            ExpenseRejectedError: Validation found errors; nothing written
            StorageError: The expense write failed; nothing written
            PartialWriteError: The share write failed after the expense
        """
        correlation_id = correlation_id or create_correlation_id()
        household_id = self._household(draft.household_id)

        members = await self._storage.list_members(household_id)
        result = self._validator.validate(draft, members)
        if not result.is_valid:
            await self._audit_logger.log_expense_rejected(
                payer_id=draft.payer_id,
                issues=[
                    {"field": i.field, "type": i.issue_type, "message": i.message}
                    for i in result.issues
                ],
                correlation_id=correlation_id,
            )
            raise ExpenseRejectedError(result)

        expense = Expense(
            household_id=household_id,
            list_id=draft.list_id,
            payer_id=draft.payer_id,
            amount=draft.amount,
            description=draft.description,
        )
        shares = [
            Share(expense_id=expense.id, user_id=user_id, owed_amount=owed)
            for user_id, owed in split_by_weights(draft.amount, draft.weights).items()
        ]

        try:
            await self._storage.insert_expense(expense)
        except DuplicateError:
            # The id is new to this call, so an earlier attempt of this
            # same write landed; its shares are still missing
            logger.warning("expense_already_written", expense_id=str(expense.id))
        except StorageError as e:
            await self._audit_logger.log_storage_error(
                operation="insert_expense",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise

        try:
            await self._storage.insert_shares(shares)
        except StorageError as e:
            await self._audit_logger.log_storage_error(
                operation="insert_shares",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            compensated = await self._compensate(expense.id)
            raise PartialWriteError(
                f"Could not save the split of this expense: {e}",
                expense_id=expense.id,
                compensated=compensated,
            ) from e

        await self._audit_logger.log_expense_added(
            expense_id=expense.id,
            payer_id=expense.payer_id,
            amount=expense.amount,
            share_count=len(shares),
            correlation_id=correlation_id,
        )
        return expense, shares

    async def settle_transfer(
        self,
        transfer: SettlementTransfer,
        confirmed: bool = False,
        household_id: Optional[str] = None,
        list_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
        settlement_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Record that a debtor paid a creditor.

        CRITICAL: Only call with confirmed=True after the member has
        confirmed this payment. A committed settlement can only be undone
        by another settlement or a soft-delete.

        To retry after a SettlementCommitError, pass the error's
        settlement_id back in. A settlement that already landed under that
        id is completed instead of written twice.

        Returns:
            The settlement expense that was written
        Raises:
            ConfirmationRequiredError: confirmed was not True
            SettlementCommitError: Either write failed, or settlement_id
                belongs to a different or rolled-back settlement; treat
                the transfer as not recorded
            StorageError: settlement_id is taken and the existing row
                could not be read back
        """
        if not confirmed:
            raise ConfirmationRequiredError(
                "Settling a transfer must be confirmed by a member first"
            )

        correlation_id = correlation_id or create_correlation_id()
        details = _transfer_details(transfer)
        expense, share = build_settlement_records(
            transfer,
            list_id=list_id,
            household_id=self._household(household_id),
            description=self._settings.settlement_description,
            settlement_id=settlement_id,
        )

        try:
            await self._storage.insert_expense(expense)
        except DuplicateError:
            existing = await self._storage.get_expense(expense.id)
            if not self._is_same_settlement(existing, expense):
                await self._audit_logger.log_settlement_failed(
                    transfer=details,
                    stage="expense",
                    error_message=f"Settlement {expense.id} exists and does not match",
                    correlation_id=correlation_id,
                )
                raise SettlementCommitError(
                    transfer,
                    stage="expense",
                    message=(
                        f"Settlement {expense.id} was already used for another "
                        "payment or rolled back; plan a new settlement"
                    ),
                    settlement_id=expense.id,
                )
        except StorageError as e:
            await self._audit_logger.log_settlement_failed(
                transfer=details,
                stage="expense",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise SettlementCommitError(
                transfer,
                stage="expense",
                message=f"Could not record the payment: {e}",
                settlement_id=expense.id,
            ) from e

        try:
            await self._storage.insert_shares([share])
        except StorageError as e:
            await self._audit_logger.log_settlement_failed(
                transfer=details,
                stage="share",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            compensated = await self._compensate(expense.id)
            await self._audit_logger.log_settlement_compensated(
                expense_id=expense.id,
                succeeded=compensated,
                correlation_id=correlation_id,
            )
            raise SettlementCommitError(
                transfer,
                stage="share",
                message=f"Could not record the payment: {e}",
                expense_id=expense.id,
                compensated=compensated,
                settlement_id=expense.id,
            ) from e

        await self._audit_logger.log_settlement_committed(
            expense_id=expense.id,
            transfer=details,
            correlation_id=correlation_id,
        )
        return expense

    async def soft_delete_expense(
        self,
        expense_id: UUID,
        expected_version: Optional[int] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Expense:
        """
        Take an expense out of all future balances ("undo an expense").

        Pass the version the member was looking at as expected_version;
        if someone else changed or settled it in the meantime the store
        raises ConcurrencyError and nothing is written.
        """
        correlation_id = correlation_id or create_correlation_id()
        expense = await self._storage.mark_expense_settled(
            expense_id,
            settled_at=_now(),
            expected_version=expected_version,
        )
        await self._audit_logger.log_expense_soft_deleted(
            expense_id=expense_id,
            correlation_id=correlation_id,
        )
        return expense

    async def reset_household(
        self,
        household_id: Optional[str] = None,
        confirmed: bool = False,
        list_id: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> int:
        """
        Mark every active expense as settled, zeroing all balances.

        Used when the household settles up outside the app.

        Returns:
            Number of expenses settled
        """
        if not confirmed:
            raise ConfirmationRequiredError(
                "Resetting the household balance must be confirmed by a member first"
            )

        correlation_id = correlation_id or create_correlation_id()
        household_id = self._household(household_id)

        count = await self._storage.settle_all(household_id, _now(), list_id=list_id)
        await self._audit_logger.log_household_reset(
            household_id=household_id,
            list_id=list_id,
            settled_count=count,
            correlation_id=correlation_id,
        )
        return count


def create_ledger_service(
    use_storage: bool = True,
) -> tuple[LedgerService, Optional[GoogleSheetsClient]]:
    """
    Factory function to create the ledger service.

    Args:
        use_storage: Whether to use the Google Sheets ledger store.
                    Falls back to in-memory storage when False or when
                    Sheets is not configured.

    Returns:
        (ledger_service, sheets_client)
    """
    settings = get_settings()
    configure_logging(settings.app.log_level)

    sheets_client = None
    storage: LedgerStorageInterface
    audit_logger = AuditLogger()  # Local-only logging

    status = validate_all_settings()
    if use_storage and not status["google_sheets"]:
        logger.warning("storage_not_configured", error=status.get("google_sheets_error"))
        use_storage = False

    if use_storage:
        # Connects lazily, on the first read or write
        sheets_client = GoogleSheetsClient()
        storage = GoogleSheetsLedgerStorage(sheets_client)
        audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
    else:
        storage = InMemoryLedgerStorage()

    return LedgerService(storage, audit_logger=audit_logger), sheets_client
