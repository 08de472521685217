"""
Abstract Storage Interface

DESIGN DECISION: The ledger rows live in an external store shared by
every device in the household. We define an abstract interface for the
handful of operations the ledger needs. This allows us to:
1. Run against Google Sheets in production
2. Use in-memory storage for testing
3. Swap in a real database later without touching the engine

The interface is intentionally simple - we're not building a full ORM.
Note that the store offers no multi-row transactions: a settlement is two
separate inserts, and the orchestrator owns what happens when the second
one fails.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Optional
from uuid import UUID

from krib_ledger.models.audit import AuditEvent
from krib_ledger.models.ledger import Expense, Member, Share


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (Google Sheets, PostgreSQL, etc.)
    must implement these methods.
    """

    @abstractmethod
    async def list_expenses(
        self,
        household_id: Optional[str] = None,
        list_id: Optional[str] = None,
        include_settled: bool = False,
    ) -> list[Expense]:
        """
        List expenses in a household and/or list.

        Args:
            household_id: Only expenses of this household
            list_id: Only expenses of this sub-ledger
            include_settled: Also return soft-deleted/settled expenses

        Returns:
            Matching expenses, newest first
        """
        pass

    @abstractmethod
    async def list_shares(self, expense_ids: Iterable[UUID]) -> list[Share]:
        """
        List the shares belonging to the given expenses.

        Returns an empty list for an empty id set.
        """
        pass

    @abstractmethod
    async def list_members(self, household_id: str) -> list[Member]:
        """Return the household roster."""
        pass

    @abstractmethod
    async def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        """Retrieve an expense by ID, or None."""
        pass

    @abstractmethod
    async def insert_expense(self, expense: Expense) -> Expense:
        """
        Insert a new expense row.

        Raises:
            DuplicateError: If an expense with this ID already exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def insert_shares(self, shares: list[Share]) -> list[Share]:
        """
        Insert share rows.

        A share whose (expense_id, user_id) is already stored is skipped,
        so writing the same shares twice stores them once.

        Returns:
            The shares that were actually written

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def mark_expense_settled(
        self,
        expense_id: UUID,
        settled_at: datetime,
        expected_version: Optional[int] = None,
    ) -> Expense:
        """
        Soft-delete an expense (is_settled = True).

        Args:
            expense_id: The expense to settle
            settled_at: Timestamp to record
            expected_version: If given, the write only happens when the
                stored version still matches

        Returns:
            The updated expense (version bumped)

        Raises:
            NotFoundError: If the expense doesn't exist
            ConcurrencyError: If expected_version is stale or the expense
                is already settled
        """
        pass

    @abstractmethod
    async def settle_all(
        self,
        household_id: str,
        settled_at: datetime,
        list_id: Optional[str] = None,
    ) -> int:
        """
        Mark every active expense in scope as settled.

        Returns:
            Number of expenses settled
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for a correlation ID, in chronological order."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class ConcurrencyError(StorageError):
    """Another writer changed the row since it was read."""
    pass
