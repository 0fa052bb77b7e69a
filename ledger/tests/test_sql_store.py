"""
Unit Tests for the SQL Ledger Store (SQLite file database)
"""

import threading
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from ledger.config import Settings
from ledger.errors import (
    AccountNotFound,
    IdempotencyConflictError,
    InsufficientBalance,
    InvalidStateTransitionError,
    RegistrationAlreadyPaid,
    TaskAlreadyCompleted,
)
from ledger.models import (
    Account,
    AddBankAccountRequest,
    CreateTaskRequest,
    RegisterAccountRequest,
    Task,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from ledger.service import LedgerService
from ledger.sql_store import SqlLedgerStore


@pytest.fixture
def store(tmp_path):
    return SqlLedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")


def new_account(store, balance="0"):
    now = datetime.now(timezone.utc)
    return store.create_account(Account(
        id=uuid4(), display_name="Test", balance=Decimal(balance), created_at=now, updated_at=now,
    ))


def new_transaction(account_id, kind, amount, status=TransactionStatus.COMPLETED, **fields):
    return Transaction(
        id=uuid4(), account_id=account_id, kind=kind, amount=Decimal(amount),
        status=status, created_at=datetime.now(timezone.utc), **fields,
    )


class TestSqlApplyDelta:
    """Tests for the conditional-update balance mutation."""

    def test_credit_and_debit(self, store):
        """Test that credits and debits persist with balance_after."""
        account = new_account(store, "100")
        credit = new_transaction(account.id, TransactionKind.TASK_REWARD, "50")
        debit = new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "30")

        store.apply_delta(account.id, Decimal("50"), credit)
        updated = store.apply_delta(account.id, Decimal("-30"), debit)

        assert updated.balance == Decimal("120.00")
        assert updated.total_earned == Decimal("50.00")
        assert updated.version == 2
        assert store.get_transaction(debit.id).balance_after == Decimal("120.00")
        assert len(store.list_transactions(account_id=account.id)) == 2

    def test_overdraw_rolls_back(self, store):
        """Test that a debit past zero writes nothing."""
        account = new_account(store, "100")
        debit = new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "150")

        with pytest.raises(InsufficientBalance):
            store.apply_delta(account.id, Decimal("-150"), debit)

        assert store.read_account(account.id).balance == Decimal("100.00")
        assert store.list_transactions(account_id=account.id) == []

    def test_unknown_account(self, store):
        """Test that a missing account is reported."""
        missing = uuid4()
        with pytest.raises(AccountNotFound):
            store.apply_delta(missing, Decimal("1"), new_transaction(missing, TransactionKind.AD_REWARD, "1"))

    def test_task_completion_unique(self, store):
        """Test that the completion constraint rejects a second settlement."""
        account = new_account(store)
        task = store.add_task(Task(
            id=uuid4(), title="Survey", reward_amount=Decimal("200"), created_at=datetime.now(timezone.utc),
        ))

        store.apply_delta(account.id, Decimal("200"),
                          new_transaction(account.id, TransactionKind.TASK_REWARD, "200"), task_id=task.id)
        with pytest.raises(TaskAlreadyCompleted):
            store.apply_delta(account.id, Decimal("200"),
                              new_transaction(account.id, TransactionKind.TASK_REWARD, "200"), task_id=task.id)

        assert store.read_account(account.id).balance == Decimal("200.00")
        assert store.get_completion(account.id, task.id) is not None

    def test_idempotency_key_unique(self, store):
        """Test that a reused idempotency key is rejected."""
        account = new_account(store, "10000")
        store.apply_delta(account.id, Decimal("500"),
                          new_transaction(account.id, TransactionKind.DAILY_BONUS, "500",
                                          idempotency_key="daily_bonus:x:2026-10-18"),
                          idempotency_key="daily_bonus:x:2026-10-18")

        with pytest.raises(IdempotencyConflictError):
            store.apply_delta(account.id, Decimal("500"),
                              new_transaction(account.id, TransactionKind.DAILY_BONUS, "500"),
                              idempotency_key="daily_bonus:x:2026-10-18")

        account = store.read_account(account.id)
        assert account.balance == Decimal("10500.00")
        assert account.last_bonus_cycle == "2026-10-18"

    def test_registration_flag_set_once(self, store):
        """Test that the registration flag gates a second bonus."""
        account = new_account(store)
        store.apply_delta(account.id, Decimal("2500"),
                          new_transaction(account.id, TransactionKind.REGISTRATION_BONUS, "2500"),
                          registration=True)

        with pytest.raises(RegistrationAlreadyPaid):
            store.apply_delta(account.id, Decimal("2500"),
                              new_transaction(account.id, TransactionKind.REGISTRATION_BONUS, "2500"),
                              registration=True)

        account = store.read_account(account.id)
        assert account.registration_paid is True
        assert account.balance == Decimal("2500.00")


class TestSqlTransitions:
    """Tests for status transitions."""

    def test_pending_deposit_confirmed_once(self, store):
        """Test that a deposit can be confirmed exactly once."""
        account = new_account(store)
        deposit = store.record_pending(new_transaction(
            account.id, TransactionKind.DEPOSIT, "8000", TransactionStatus.PENDING,
            net_amount=Decimal("7910"), tax_amount=Decimal("90"),
        ))

        confirmed = store.transition(deposit.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED,
                                     delta=Decimal("7910"))
        assert confirmed.status == TransactionStatus.COMPLETED
        assert confirmed.balance_after == Decimal("7910.00")

        with pytest.raises(InvalidStateTransitionError):
            store.transition(deposit.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED,
                             delta=Decimal("7910"))
        assert store.read_account(account.id).balance == Decimal("7910.00")

    def test_compensation(self, store):
        """Test that a rejected withdrawal is re-credited by a reversal row."""
        account = new_account(store, "60000")
        withdrawal = new_transaction(account.id, TransactionKind.WITHDRAWAL, "50000", TransactionStatus.PENDING)
        store.apply_delta(account.id, Decimal("-50000"), withdrawal)
        reversal = new_transaction(account.id, TransactionKind.REVERSAL, "50000",
                                   reference_transaction_id=withdrawal.id)

        failed = store.transition(withdrawal.id, TransactionStatus.PENDING, TransactionStatus.FAILED,
                                  delta=Decimal("50000"), compensation=reversal)

        assert failed.status == TransactionStatus.FAILED
        assert store.get_transaction(reversal.id).reference_transaction_id == withdrawal.id
        assert store.read_account(account.id).balance == Decimal("60000.00")


class TestSqlBackedService:
    """End-to-end flow through the service with the SQL backend."""

    def test_full_flow(self, tmp_path):
        """Test registration, earning, deposit, withdrawal and audit."""
        settings = Settings(database_url=f"sqlite:///{tmp_path / 'service.db'}", minimum_withdrawal=Decimal("1000"))
        service = LedgerService(settings=settings)
        assert isinstance(service.store, SqlLedgerStore)

        account = service.register_account(RegisterAccountRequest(display_name="Ada"))
        task = service.create_task(CreateTaskRequest(title="Watch ad", reward_amount=Decimal("150")))
        service.complete_task(account.id, task.id)
        with pytest.raises(TaskAlreadyCompleted):
            service.complete_task(account.id, task.id)

        deposit = service.request_deposit(account.id, Decimal("8000"))
        assert deposit.tax_amount == Decimal("240.00")
        service.confirm_deposit(deposit.id)

        bank_account = service.add_bank_account(account.id, AddBankAccountRequest(
            bank_name="GTBank", account_number="0987654321", account_holder="Ada",
        ))
        service.verify_bank_account(bank_account.id)
        withdrawal = service.request_withdrawal(account.id, Decimal("2000"), bank_account.id)
        service.reject_withdrawal(withdrawal.id, "Retry later")

        # 2500 + 150 + 7760
        assert service.get_account(account.id).balance == Decimal("10410.00")
        assert service.audit_ledger().is_clean
        stats = service.read_ledger_snapshot(refresh=True)
        assert stats.total_accounts == 1
        assert stats.total_balance == Decimal("10410.00")

    def test_allowance_priced_at_confirmation(self, tmp_path):
        """Test that two pending deposits on a fresh account are taxed 90 then 240."""
        settings = Settings(database_url=f"sqlite:///{tmp_path / 'deposits.db'}")
        service = LedgerService(settings=settings)
        account = service.register_account(RegisterAccountRequest(display_name="Ada"))
        first = service.request_deposit(account.id, Decimal("8000"))
        second = service.request_deposit(account.id, Decimal("8000"))

        assert service.confirm_deposit(first.id).tax_amount == Decimal("90.00")
        confirmed = service.confirm_deposit(second.id)

        assert confirmed.tax_amount == Decimal("240.00")
        assert service.store.get_transaction(second.id).net_amount == Decimal("7760.00")
        # 2500 + 7910 + 7760
        assert service.get_account(account.id).balance == Decimal("18170.00")
        assert service.audit_ledger().is_clean


class TestSqlConcurrency:
    """Tests for concurrent mutations against one SQL-backed account."""

    def run_concurrently(self, count, work):
        barrier = threading.Barrier(count)
        outcomes = []
        lock = threading.Lock()

        def runner(i):
            barrier.wait()
            try:
                result = work(i)
            except Exception as e:
                result = e
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_concurrent_debits_never_overdraw(self, tmp_path):
        """Test that concurrent debits totalling twice the balance succeed only up to it."""
        store = SqlLedgerStore(f"sqlite:///{tmp_path / 'race.db'}", max_retries=50, retry_backoff=0.01)
        account = new_account(store, "1000")

        outcomes = self.run_concurrently(20, lambda i: store.apply_delta(
            account.id, Decimal("-100"),
            new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "100"),
        ))

        succeeded = [o for o in outcomes if isinstance(o, Account)]
        rejected = [o for o in outcomes if isinstance(o, InsufficientBalance)]
        assert len(succeeded) == 10
        assert len(rejected) == 10
        assert store.read_account(account.id).balance == Decimal("0.00")
        assert len(store.list_transactions(account_id=account.id)) == 10
