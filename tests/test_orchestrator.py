"""Flow tests for LedgerService against the in-memory store."""

import asyncio
import pytest
from decimal import Decimal
from uuid import uuid4

from krib_ledger.audit import AuditLogger
from krib_ledger.config import LedgerSettings, get_settings
from krib_ledger.models.audit import AuditEventType
from krib_ledger.models.ledger import Expense, ExpenseDraft, Member, SettlementTransfer, Share
from krib_ledger.orchestrator import (
    ConfirmationRequiredError,
    ExpenseRejectedError,
    LedgerError,
    LedgerService,
    PartialWriteError,
    SettlementCommitError,
    create_ledger_service,
)
from krib_ledger.services.storage import (
    ConcurrencyError,
    DuplicateError,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    NotFoundError,
    StorageError,
)


HOUSEHOLD = "h1"


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def storage():
    store = InMemoryLedgerStorage()
    for user_id, name in [("a", "Anna"), ("b", "Bram"), ("c", "Cas")]:
        store.add_member(HOUSEHOLD, Member(user_id=user_id, display_name=name))
    return store


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def service(storage, audit_storage):
    return LedgerService(
        storage,
        audit_logger=AuditLogger(audit_storage),
        settings=LedgerSettings(default_household_id=None),
    )


def groceries(amount="30.00", **overrides) -> ExpenseDraft:
    data = {
        "payer_id": "a",
        "amount": Decimal(amount),
        "description": "Groceries",
        "weights": {"a": 1, "b": 1, "c": 1},
        "household_id": HOUSEHOLD,
    }
    data.update(overrides)
    return ExpenseDraft(**data)


def event_types(audit_storage) -> list:
    return [e.event_type for e in audit_storage.events]


class LandedThenFailedStorage(InMemoryLedgerStorage):
    """Stores the expense, then reports it as a duplicate, like a retried append."""

    async def insert_expense(self, expense):
        await super().insert_expense(expense)
        raise DuplicateError(f"Expense already exists: {expense.id}")


@pytest.fixture
def landed_storage():
    store = LandedThenFailedStorage()
    for user_id in ("a", "b", "c"):
        store.add_member(HOUSEHOLD, Member(user_id=user_id))
    return store


class TestSummary:
    """Tests for reading balances and the settlement plan."""

    def test_empty_household(self, service):
        summary = run(service.get_summary(HOUSEHOLD))

        assert [b.user_id for b in summary.balances] == ["a", "b", "c"]
        assert summary.transfers == []
        assert summary.is_settled_up is True
        assert summary.total_spent == Decimal("0")
        assert summary.last_settled_at is None

    def test_summary_after_expense(self, service):
        run(service.add_expense(groceries()))

        summary = run(service.get_summary(HOUSEHOLD))

        assert summary.balance_for("a").net == Decimal("20.00")
        assert summary.balance_for("b").net == Decimal("-10.00")
        assert summary.balance_for("c").net == Decimal("-10.00")
        assert summary.balances[0].user_id == "a"
        assert summary.total_spent == Decimal("30.00")
        assert [(t.from_user_id, t.to_user_id, t.amount) for t in summary.transfers] == [
            ("b", "a", Decimal("10.00")),
            ("c", "a", Decimal("10.00")),
        ]

    def test_list_scoping(self, service):
        run(service.add_expense(groceries()))
        run(service.add_expense(groceries("12.00", payer_id="b", weights={"b": 1, "c": 1}, list_id="trip")))

        trip = run(service.get_summary(HOUSEHOLD, list_id="trip"))
        everything = run(service.get_summary(HOUSEHOLD))

        assert trip.balance_for("a").net == Decimal("0")
        assert trip.balance_for("b").net == Decimal("6.00")
        assert trip.total_spent == Decimal("12.00")
        assert everything.total_spent == Decimal("42.00")
        assert everything.balance_for("c").net == Decimal("-16.00")

    def test_missing_household_raises(self, service):
        with pytest.raises(LedgerError):
            run(service.get_summary())

    def test_default_household(self, storage):
        service = LedgerService(storage, settings=LedgerSettings(default_household_id=HOUSEHOLD))
        summary = run(service.get_summary())
        assert summary.household_id == HOUSEHOLD

    def test_inconsistent_shares_are_audited_not_raised(self, service, storage, audit_storage):
        expense = Expense(household_id=HOUSEHOLD, payer_id="a", amount=Decimal("20.00"))
        run(storage.insert_expense(expense))
        run(storage.insert_shares([
            Share(expense_id=expense.id, user_id="b", owed_amount=Decimal("15.00")),
        ]))

        summary = run(service.get_summary(HOUSEHOLD))

        assert summary.balance_for("a").net == Decimal("20.00")
        assert AuditEventType.SHARE_INCONSISTENCY in event_types(audit_storage)

    def test_configured_epsilon(self, storage):
        """Balances inside the configured epsilon are not planned."""
        service = LedgerService(storage, settings=LedgerSettings(balance_epsilon=Decimal("1.00")))
        expense = Expense(household_id=HOUSEHOLD, payer_id="a", amount=Decimal("0.90"))
        run(storage.insert_expense(expense))
        run(storage.insert_shares([
            Share(expense_id=expense.id, user_id="b", owed_amount=Decimal("0.90")),
        ]))

        summary = run(service.get_summary(HOUSEHOLD))

        assert summary.transfers == []
        assert all(b.is_settled_up for b in summary.balances)

    def test_member_who_left_is_still_planned(self, service, storage):
        expense = Expense(household_id=HOUSEHOLD, payer_id="gone", amount=Decimal("9.00"))
        run(storage.insert_expense(expense))
        run(storage.insert_shares([
            Share(expense_id=expense.id, user_id="a", owed_amount=Decimal("9.00")),
        ]))

        summary = run(service.get_summary(HOUSEHOLD))

        assert summary.balance_for("gone").display_name == "Unknown"
        assert summary.transfers[0].to_user_id == "gone"


class TestAddExpense:
    """Tests for the add-expense flow."""

    def test_writes_expense_and_split(self, service, storage, audit_storage):
        expense, shares = run(service.add_expense(groceries("10.00")))

        stored = run(storage.list_shares([expense.id]))
        assert sorted(s.owed_amount for s in stored) == [Decimal("3.33"), Decimal("3.33"), Decimal("3.34")]
        assert len(shares) == 3
        assert expense.household_id == HOUSEHOLD
        assert AuditEventType.EXPENSE_ADDED in event_types(audit_storage)

    def test_rejected_expense_writes_nothing(self, service, storage, audit_storage):
        with pytest.raises(ExpenseRejectedError) as exc_info:
            run(service.add_expense(groceries(weights={"a": 1, "zed": 1})))

        assert "zed" in str(exc_info.value)
        assert exc_info.value.result.is_valid is False
        assert run(storage.list_expenses(HOUSEHOLD)) == []
        assert AuditEventType.EXPENSE_REJECTED in event_types(audit_storage)

    def test_share_failure_is_compensated(self, service, storage):
        storage.fail_next_share_insert = True

        with pytest.raises(PartialWriteError) as exc_info:
            run(service.add_expense(groceries()))

        assert exc_info.value.compensated is True
        assert run(storage.list_expenses(HOUSEHOLD)) == []
        assert run(service.get_summary(HOUSEHOLD)).is_settled_up is True

    def test_expense_failure_writes_nothing(self, service, storage, audit_storage):
        storage.fail_next_expense_insert = True

        with pytest.raises(StorageError):
            run(service.add_expense(groceries()))

        assert run(storage.list_expenses(HOUSEHOLD, include_settled=True)) == []
        assert AuditEventType.STORAGE_ERROR in event_types(audit_storage)

    def test_expense_that_landed_on_a_failed_attempt_gets_its_shares(self, landed_storage):
        """A duplicate report for our own new expense still writes the split."""
        service = LedgerService(landed_storage, settings=LedgerSettings())

        expense, _ = run(service.add_expense(groceries("10.00", weights={"a": 1, "b": 1})))

        assert len(run(landed_storage.list_shares([expense.id]))) == 2
        summary = run(service.get_summary(HOUSEHOLD))
        assert summary.balance_for("a").net == Decimal("5.00")
        assert summary.balance_for("b").net == Decimal("-5.00")


class TestSettleTransfer:
    """Tests for committing settlement transfers."""

    @pytest.fixture
    def transfer(self):
        return SettlementTransfer(from_user_id="b", to_user_id="a", amount=Decimal("10.00"))

    def test_requires_confirmation(self, service, storage, transfer):
        run(service.add_expense(groceries()))

        with pytest.raises(ConfirmationRequiredError):
            run(service.settle_transfer(transfer, household_id=HOUSEHOLD))

        assert len(run(storage.list_expenses(HOUSEHOLD))) == 1

    def test_settling_the_whole_plan(self, service, audit_storage):
        run(service.add_expense(groceries()))
        plan = run(service.get_summary(HOUSEHOLD)).transfers

        for transfer in plan:
            expense = run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))
            assert expense.is_settlement() is True

        summary = run(service.get_summary(HOUSEHOLD))
        assert summary.is_settled_up is True
        assert summary.transfers == []
        assert event_types(audit_storage).count(AuditEventType.SETTLEMENT_COMMITTED) == 2

    def test_partial_settlement(self, service):
        run(service.add_expense(groceries()))
        partial = SettlementTransfer(from_user_id="b", to_user_id="a", amount=Decimal("4.00"))

        run(service.settle_transfer(partial, confirmed=True, household_id=HOUSEHOLD))

        summary = run(service.get_summary(HOUSEHOLD))
        assert summary.balance_for("b").net == Decimal("-6.00")
        assert summary.balance_for("a").net == Decimal("16.00")

    def test_expense_write_failure(self, service, storage, transfer, audit_storage):
        run(service.add_expense(groceries()))
        storage.fail_next_expense_insert = True

        with pytest.raises(SettlementCommitError) as exc_info:
            run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        assert exc_info.value.stage == "expense"
        assert exc_info.value.expense_id is None
        assert exc_info.value.transfer == transfer
        assert len(run(storage.list_expenses(HOUSEHOLD, include_settled=True))) == 1
        assert AuditEventType.SETTLEMENT_FAILED in event_types(audit_storage)

    def test_share_write_failure_is_compensated(self, service, storage, transfer, audit_storage):
        run(service.add_expense(groceries()))
        storage.fail_next_share_insert = True

        with pytest.raises(SettlementCommitError) as exc_info:
            run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        error = exc_info.value
        assert error.stage == "share"
        assert error.compensated is True
        orphan = run(storage.get_expense(error.expense_id))
        assert orphan.is_settled is True

        # Balances look exactly as before the attempt
        summary = run(service.get_summary(HOUSEHOLD))
        assert summary.balance_for("b").net == Decimal("-10.00")
        assert len(summary.transfers) == 2
        assert AuditEventType.SETTLEMENT_COMPENSATED in event_types(audit_storage)

    def test_failed_compensation_is_reported(self, service, storage, transfer):
        run(service.add_expense(groceries()))
        storage.fail_next_share_insert = True
        storage.fail_next_settle = True

        with pytest.raises(SettlementCommitError) as exc_info:
            run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        assert exc_info.value.compensated is False

    def test_duplicate_expense_from_earlier_attempt(self, landed_storage, transfer):
        """An expense already written by a retried commit still gets its share."""
        service = LedgerService(landed_storage, settings=LedgerSettings(default_household_id=HOUSEHOLD))

        expense = run(service.settle_transfer(transfer, confirmed=True))

        shares = run(landed_storage.list_shares([expense.id]))
        assert [(s.user_id, s.owed_amount) for s in shares] == [("a", Decimal("10.00"))]

    def test_retry_with_same_settlement_id_writes_once(self, service, storage, transfer):
        run(service.add_expense(groceries()))
        settlement_id = uuid4()

        for _ in range(2):
            run(service.settle_transfer(
                transfer,
                confirmed=True,
                household_id=HOUSEHOLD,
                settlement_id=settlement_id,
            ))

        settlements = [
            e for e in run(storage.list_expenses(HOUSEHOLD)) if e.is_settlement()
        ]
        assert [e.id for e in settlements] == [settlement_id]
        assert len(run(storage.list_shares([settlement_id]))) == 1
        assert run(service.get_summary(HOUSEHOLD)).balance_for("b").net == Decimal("0")

    def test_retry_after_expense_failure_uses_error_settlement_id(self, service, storage, transfer):
        run(service.add_expense(groceries()))
        storage.fail_next_expense_insert = True

        with pytest.raises(SettlementCommitError) as exc_info:
            run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))
        settlement_id = exc_info.value.settlement_id
        assert settlement_id is not None

        expense = run(service.settle_transfer(
            transfer, confirmed=True, household_id=HOUSEHOLD, settlement_id=settlement_id,
        ))

        assert expense.id == settlement_id
        assert run(service.get_summary(HOUSEHOLD)).balance_for("b").net == Decimal("0")

    def test_reused_settlement_id_for_other_payment_is_refused(self, service, storage, transfer):
        run(service.add_expense(groceries()))
        settlement_id = uuid4()
        run(service.settle_transfer(
            transfer, confirmed=True, household_id=HOUSEHOLD, settlement_id=settlement_id,
        ))
        other = SettlementTransfer(from_user_id="c", to_user_id="a", amount=Decimal("10.00"))

        with pytest.raises(SettlementCommitError):
            run(service.settle_transfer(
                other, confirmed=True, household_id=HOUSEHOLD, settlement_id=settlement_id,
            ))

        assert run(service.get_summary(HOUSEHOLD)).balance_for("c").net == Decimal("-10.00")

    def test_retry_of_rolled_back_settlement_is_refused(self, service, storage, transfer):
        run(service.add_expense(groceries()))
        storage.fail_next_share_insert = True
        with pytest.raises(SettlementCommitError) as exc_info:
            run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        with pytest.raises(SettlementCommitError, match="rolled back"):
            run(service.settle_transfer(
                transfer,
                confirmed=True,
                household_id=HOUSEHOLD,
                settlement_id=exc_info.value.settlement_id,
            ))

    def test_configured_settlement_description(self, storage, transfer):
        service = LedgerService(
            storage,
            settings=LedgerSettings(settlement_description="Afrekening"),
        )

        expense = run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        assert expense.description == "Afrekening"
        assert expense.is_settlement("Afrekening") is True

    def test_missing_household_raises(self, service, transfer):
        with pytest.raises(LedgerError):
            run(service.settle_transfer(transfer, confirmed=True))


class TestSoftDeleteAndReset:
    """Tests for undoing expenses and resetting the household."""

    def test_soft_delete_removes_expense_from_balances(self, service, audit_storage):
        expense, _ = run(service.add_expense(groceries()))

        deleted = run(service.soft_delete_expense(expense.id, expected_version=expense.version))

        assert deleted.is_settled is True
        assert deleted.version == expense.version + 1
        assert run(service.get_summary(HOUSEHOLD)).is_settled_up is True
        assert AuditEventType.EXPENSE_SOFT_DELETED in event_types(audit_storage)

    def test_stale_version_is_rejected(self, service, storage):
        expense, _ = run(service.add_expense(groceries()))

        with pytest.raises(ConcurrencyError):
            run(service.soft_delete_expense(expense.id, expected_version=expense.version + 3))

        assert run(storage.get_expense(expense.id)).is_settled is False

    def test_soft_delete_missing_expense(self, service):
        with pytest.raises(NotFoundError):
            run(service.soft_delete_expense(uuid4()))

    def test_reset_requires_confirmation(self, service):
        with pytest.raises(ConfirmationRequiredError):
            run(service.reset_household(HOUSEHOLD))

    def test_reset_zeroes_balances(self, service, audit_storage):
        run(service.add_expense(groceries()))
        run(service.add_expense(groceries("9.00", payer_id="c")))

        count = run(service.reset_household(HOUSEHOLD, confirmed=True))

        summary = run(service.get_summary(HOUSEHOLD))
        assert count == 2
        assert summary.is_settled_up is True
        assert summary.total_spent == Decimal("0")
        assert summary.last_settled_at is not None
        assert AuditEventType.HOUSEHOLD_RESET in event_types(audit_storage)

    def test_reset_one_list(self, service):
        run(service.add_expense(groceries()))
        run(service.add_expense(groceries("12.00", list_id="trip")))

        count = run(service.reset_household(HOUSEHOLD, confirmed=True, list_id="trip"))

        assert count == 1
        assert run(service.get_summary(HOUSEHOLD)).balance_for("a").net == Decimal("20.00")


class TestExpenseImpact:
    """Tests for the per-expense breakdown."""

    def test_impact(self, service):
        expense, _ = run(service.add_expense(groceries()))

        found, impacts = run(service.get_expense_impact(expense.id))

        assert found.id == expense.id
        by_user = {i.user_id: i.net for i in impacts}
        assert by_user == {"a": Decimal("20.00"), "b": Decimal("-10.00"), "c": Decimal("-10.00")}

    def test_missing_expense(self, service):
        with pytest.raises(NotFoundError):
            run(service.get_expense_impact(uuid4()))

    def test_settlement_impact(self, service):
        transfer = SettlementTransfer(from_user_id="b", to_user_id="a", amount=Decimal("5.00"))
        expense = run(service.settle_transfer(transfer, confirmed=True, household_id=HOUSEHOLD))

        _, impacts = run(service.get_expense_impact(expense.id))

        assert [(i.user_id, i.net) for i in impacts] == [("b", Decimal("5.00")), ("a", Decimal("-5.00"))]


class TestCreateLedgerService:
    """Tests for the service factory."""

    @pytest.fixture(autouse=True)
    def fresh_settings(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)  # no stray .env
        for name in ("GOOGLE_SHEETS_CREDENTIALS_PATH", "GOOGLE_SHEETS_SPREADSHEET_ID"):
            monkeypatch.delenv(name, raising=False)
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    def test_falls_back_to_memory_without_sheets_config(self):
        service, client = create_ledger_service(use_storage=True)

        assert client is None
        assert isinstance(service._storage, InMemoryLedgerStorage)

    def test_uses_sheets_when_configured(self, monkeypatch, tmp_path):
        credentials = tmp_path / "credentials.json"
        credentials.write_text("{}")
        monkeypatch.setenv("GOOGLE_SHEETS_CREDENTIALS_PATH", str(credentials))
        monkeypatch.setenv("GOOGLE_SHEETS_SPREADSHEET_ID", "sheet-123")

        service, client = create_ledger_service(use_storage=True)

        assert isinstance(client, GoogleSheetsClient)
        assert isinstance(service._storage, GoogleSheetsLedgerStorage)

    def test_memory_when_storage_disabled(self):
        service, client = create_ledger_service(use_storage=False)

        assert client is None
        assert isinstance(service._storage, InMemoryLedgerStorage)
