"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is the ledger store because:
1. Household members can look at the raw ledger directly
2. No database setup required
3. Built-in history and backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (a household ledger is small)
- No transactions (the orchestrator compensates failed settlements)
- Limited query capabilities (we filter in Python)

Expenses, shares and members live on three worksheets, one row each.
"""

import json
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import gspread
from gspread.utils import rowcol_to_a1
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from krib_ledger.config import get_settings
from krib_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from krib_ledger.models.ledger import Expense, Member, Share
from krib_ledger.services.storage.interface import (
    AuditStorageInterface,
    ConcurrencyError,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


EXPENSE_COLUMNS = [
    "id",
    "household_id",
    "list_id",
    "payer_id",
    "amount",
    "description",
    "created_at",
    "is_settled",
    "settled_at",
    "version",
]

SHARE_COLUMNS = [
    "expense_id",
    "user_id",
    "owed_amount",
]

MEMBER_COLUMNS = [
    "household_id",
    "user_id",
    "display_name",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

# Errors that retrying cannot fix
_PERMANENT_ERRORS = (DuplicateError, NotFoundError, ConcurrencyError)

# is_settled, settled_at and version are adjacent columns
_IS_SETTLED_COL = EXPENSE_COLUMNS.index("is_settled") + 1
_VERSION_COL = EXPENSE_COLUMNS.index("version") + 1


def _safe_get(row: list, index: int, default: str = "") -> str:
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


def _settle_range(row: int) -> str:
    """A1 range of the is_settled..version cells of one expense row."""
    start = rowcol_to_a1(row, _IS_SETTLED_COL)
    end = rowcol_to_a1(row, _VERSION_COL)
    return f"{start}:{end}"


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and lazily creates missing worksheets.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_expenses_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.expenses_sheet_name, EXPENSE_COLUMNS, 1000)

    def get_shares_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.shares_sheet_name, SHARE_COLUMNS, 5000)

    def get_members_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.members_sheet_name, MEMBER_COLUMNS, 100)

    def get_audit_sheet(self) -> gspread.Worksheet:
        return self._get_or_create(self._settings.audit_sheet_name, AUDIT_COLUMNS, 5000)


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of the ledger store.

    Amounts are written as plain decimal strings ("12.50") so the sheet
    never rounds them through floating point.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _expense_to_row(expense: Expense) -> list:
        return [
            str(expense.id),
            expense.household_id or "",
            expense.list_id or "",
            expense.payer_id,
            str(expense.amount),
            expense.description,
            expense.created_at.isoformat(),
            str(expense.is_settled),
            expense.settled_at.isoformat() if expense.settled_at else "",
            str(expense.version),
        ]

    @staticmethod
    def _row_to_expense(row: list) -> Expense:
        return Expense(
            id=UUID(_safe_get(row, 0)),
            household_id=_safe_get(row, 1) or None,
            list_id=_safe_get(row, 2) or None,
            payer_id=_safe_get(row, 3),
            amount=Decimal(_safe_get(row, 4, "0")),
            description=_safe_get(row, 5),
            created_at=datetime.fromisoformat(_safe_get(row, 6)),
            is_settled=_safe_get(row, 7).lower() == "true",
            settled_at=datetime.fromisoformat(_safe_get(row, 8)) if _safe_get(row, 8) else None,
            version=int(_safe_get(row, 9, "0")),
        )

    @staticmethod
    def _share_to_row(share: Share) -> list:
        return [str(share.expense_id), share.user_id, str(share.owed_amount)]

    @staticmethod
    def _row_to_share(row: list) -> Share:
        return Share(
            expense_id=UUID(_safe_get(row, 0)),
            user_id=_safe_get(row, 1),
            owed_amount=Decimal(_safe_get(row, 2, "0")),
        )

    def _find_expense_row(self, sheet: gspread.Worksheet, expense_id: UUID) -> tuple[int, list]:
        """Return (1-based sheet row index, row values)."""
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):  # Row 1 is header
            if row and row[0] == str(expense_id):
                return idx, row
        raise NotFoundError(f"Expense not found: {expense_id}")

    # -- reads ---------------------------------------------------------------

    async def list_expenses(
        self,
        household_id: Optional[str] = None,
        list_id: Optional[str] = None,
        include_settled: bool = False,
    ) -> list[Expense]:
        try:
            sheet = self._client.get_expenses_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to list expenses: {e}")

        expenses = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            try:
                expense = self._row_to_expense(row)
            except Exception:
                continue  # Skip malformed rows

            if household_id is not None and expense.household_id != household_id:
                continue
            if list_id is not None and expense.list_id != list_id:
                continue
            if not include_settled and expense.is_settled:
                continue
            expenses.append(expense)

        expenses.sort(key=lambda e: e.created_at, reverse=True)
        return expenses

    async def list_shares(self, expense_ids: Iterable[UUID]) -> list[Share]:
        wanted = {str(expense_id) for expense_id in expense_ids}
        if not wanted:
            return []

        try:
            sheet = self._client.get_shares_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to list shares: {e}")

        shares = []
        for row in all_rows:
            if not row or row[0] not in wanted:
                continue
            try:
                shares.append(self._row_to_share(row))
            except Exception:
                continue
        return shares

    async def list_members(self, household_id: str) -> list[Member]:
        try:
            sheet = self._client.get_members_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to list members: {e}")

        return [
            Member(user_id=row[1], display_name=_safe_get(row, 2) or row[1])
            for row in all_rows
            if len(row) > 1 and row[0] == household_id and row[1]
        ]

    async def get_expense(self, expense_id: UUID) -> Optional[Expense]:
        try:
            sheet = self._client.get_expenses_sheet()
            _, row = self._find_expense_row(sheet, expense_id)
            return self._row_to_expense(row)
        except NotFoundError:
            return None
        except Exception as e:
            raise StorageError(f"Failed to get expense: {e}")

    # -- writes --------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(_PERMANENT_ERRORS),
        reraise=True,
    )
    async def insert_expense(self, expense: Expense) -> Expense:
        """Append an expense row; a retry of the same ID is a DuplicateError."""
        try:
            sheet = self._client.get_expenses_sheet()
            existing_ids = sheet.col_values(1)[1:]
            if str(expense.id) in existing_ids:
                raise DuplicateError(f"Expense already exists: {expense.id}")
            sheet.append_row(self._expense_to_row(expense), value_input_option="RAW")
            return expense
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save expense: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def insert_shares(self, shares: list[Share]) -> list[Share]:
        """
        Append share rows, skipping ones already stored.

        A retried append whose first attempt landed would otherwise
        double the members' consumed amounts.
        """
        if not shares:
            return []
        try:
            sheet = self._client.get_shares_sheet()
            stored = {
                (row[0], row[1])
                for row in sheet.get_all_values()[1:]
                if len(row) > 1
            }
            new_shares = [
                share for share in shares
                if (str(share.expense_id), share.user_id) not in stored
            ]
            if new_shares:
                sheet.append_rows(
                    [self._share_to_row(share) for share in new_shares],
                    value_input_option="RAW",
                )
            return new_shares
        except Exception as e:
            raise StorageError(f"Failed to save shares: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(_PERMANENT_ERRORS),
        reraise=True,
    )
    async def mark_expense_settled(
        self,
        expense_id: UUID,
        settled_at: datetime,
        expected_version: Optional[int] = None,
    ) -> Expense:
        try:
            sheet = self._client.get_expenses_sheet()
            idx, row = self._find_expense_row(sheet, expense_id)
            expense = self._row_to_expense(row)

            if expense.is_settled:
                raise ConcurrencyError(f"Expense already settled: {expense_id}")
            if expected_version is not None and expense.version != expected_version:
                raise ConcurrencyError(
                    f"Expense {expense_id} changed (version {expense.version}, "
                    f"expected {expected_version})"
                )

            new_version = expense.version + 1
            # One range write, so a failure never leaves the row half-updated
            sheet.update(
                range_name=_settle_range(idx),
                values=[["True", settled_at.isoformat(), str(new_version)]],
                value_input_option="RAW",
            )

            return expense.model_copy(update={
                "is_settled": True,
                "settled_at": settled_at,
                "version": new_version,
            })
        except (NotFoundError, ConcurrencyError):
            raise
        except Exception as e:
            raise StorageError(f"Failed to settle expense: {e}")

    async def settle_all(
        self,
        household_id: str,
        settled_at: datetime,
        list_id: Optional[str] = None,
    ) -> int:
        active = await self.list_expenses(household_id, list_id)
        settled = 0
        for expense in active:
            try:
                await self.mark_expense_settled(expense.id, settled_at)
                settled += 1
            except ConcurrencyError:
                # Settled by another member in the meantime
                continue
        return settled


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_safe_get(row, 0)),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            entity_type=_safe_get(row, 4) or None,
            entity_id=_safe_get(row, 5) or None,
            correlation_id=UUID(_safe_get(row, 6)) if _safe_get(row, 6) else None,
            description=_safe_get(row, 7),
            details=json.loads(_safe_get(row, 8)) if _safe_get(row, 8) else {},
            error_message=_safe_get(row, 9) or None,
            is_user_action=_safe_get(row, 10).lower() == "true",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            sheet = self._client.get_audit_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events = []
        for row in all_rows:
            if row and len(row) > 6 and row[6] == str(correlation_id):
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    continue

        events.sort(key=lambda e: e.timestamp)
        return events
