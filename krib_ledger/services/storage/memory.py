"""
In-Memory Storage Implementation

Keeps the ledger in dictionaries. Used by the test suite and for local
runs without a spreadsheet. Behaves like the Sheets store, including the
lack of multi-row transactions, and can be told to fail the next write
so the settlement failure paths can be exercised.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Optional
from uuid import UUID

from krib_ledger.models.audit import AuditEvent
from krib_ledger.models.ledger import Expense, Member, Share
from krib_ledger.services.storage.interface import (
    AuditStorageInterface,
    ConcurrencyError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dictionary-backed ledger store."""

    def __init__(self):
        self._expenses: dict[UUID, Expense] = {}
        self._shares: list[Share] = []
        self._members: dict[str, list[Member]] = {}

        # Fault injection for tests
        self.fail_next_expense_insert = False
        self.fail_next_share_insert = False
        self.fail_next_settle = False

    def add_member(self, household_id: str, member: Member) -> None:
        self._members.setdefault(household_id, []).append(member)

    async def list_expenses(
        self,
        household_id: Optional[str] = None,
        list_id: Optional[str] = None,
        include_settled: bool = False,
    ) -> list[Expense]:
        expenses = [
            e.model_copy()
            for e in self._expenses.values()
            if (household_id is None or e.household_id == household_id)
            and (list_id is None or e.list_id == list_id)
            and (include_settled or not e.is_settled)
        ]
        expenses.sort(key=lambda e: e.created_at, reverse=True)
        return expenses

    async def list_shares(self, expense_ids: Iterable[UUID]) -> list[Share]:
        wanted = set(expense_ids)
        if not wanted:
            return []
        return [s.model_copy() for s in self._shares if s.expense_id in wanted]

    async def list_members(self, household_id: str) -> list[Member]:
        return list(self._members.get(household_id, []))

    async def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        expense = self._expenses.get(expense_id)
        return expense.model_copy() if expense else None

    async def insert_expense(self, expense: Expense) -> Expense:
        if self.fail_next_expense_insert:
            self.fail_next_expense_insert = False
            raise StorageError("Simulated failure inserting expense")
        if expense.id in self._expenses:
            raise DuplicateError(f"Expense already exists: {expense.id}")
        self._expenses[expense.id] = expense.model_copy()
        return expense

    async def insert_shares(self, shares: list[Share]) -> list[Share]:
        if self.fail_next_share_insert:
            self.fail_next_share_insert = False
            raise StorageError("Simulated failure inserting shares")
        stored = {(s.expense_id, s.user_id) for s in self._shares}
        new_shares = [s for s in shares if (s.expense_id, s.user_id) not in stored]
        self._shares.extend(s.model_copy() for s in new_shares)
        return new_shares

    async def mark_expense_settled(
        self,
        expense_id: UUID,
        settled_at: datetime,
        expected_version: Optional[int] = None,
    ) -> Expense:
        if self.fail_next_settle:
            self.fail_next_settle = False
            raise StorageError("Simulated failure settling expense")

        expense = self._expenses.get(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense not found: {expense_id}")
        if expense.is_settled:
            raise ConcurrencyError(f"Expense already settled: {expense_id}")
        if expected_version is not None and expense.version != expected_version:
            raise ConcurrencyError(
                f"Expense {expense_id} changed (version {expense.version}, "
                f"expected {expected_version})"
            )

        updated = expense.model_copy(update={
            "is_settled": True,
            "settled_at": settled_at,
            "version": expense.version + 1,
        })
        self._expenses[expense_id] = updated
        return updated.model_copy()

    async def settle_all(
        self,
        household_id: str,
        settled_at: datetime,
        list_id: Optional[str] = None,
    ) -> int:
        active = await self.list_expenses(household_id, list_id)
        for expense in active:
            await self.mark_expense_settled(expense.id, settled_at)
        return len(active)


class InMemoryAuditStorage(AuditStorageInterface):
    """List-backed, append-only audit store."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events
