"""
Unit Tests for the in-memory Ledger Store

Tests cover:
1. Atomic apply_delta (balance check inside the locked unit)
2. Completion and idempotency guards
3. Status transitions with compensation
4. Serialization of concurrent mutations on one account
"""

import threading
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from ledger.errors import (
    AccountNotFound,
    ConcurrentModificationRetryExceeded,
    IdempotencyConflictError,
    InsufficientBalance,
    InvalidStateTransitionError,
    TaskAlreadyCompleted,
    TransactionNotFound,
)
from ledger.models import Account, Transaction, TransactionKind, TransactionStatus
from ledger.store import InMemoryLedgerStore


def new_account(store: InMemoryLedgerStore, balance: str = "0") -> Account:
    now = datetime.now(timezone.utc)
    return store.create_account(Account(
        id=uuid4(), display_name="Test", balance=Decimal(balance), created_at=now, updated_at=now,
    ))


def new_transaction(account_id: UUID, kind: TransactionKind, amount: str,
                    status: TransactionStatus = TransactionStatus.COMPLETED, **fields) -> Transaction:
    return Transaction(
        id=uuid4(), account_id=account_id, kind=kind, amount=Decimal(amount),
        status=status, created_at=datetime.now(timezone.utc), **fields,
    )


class TestApplyDelta:
    """Tests for the atomic balance mutation."""

    def test_credit_updates_balance_and_appends_row(self):
        """Test that a credit moves the balance and stamps balance_after."""
        store = InMemoryLedgerStore()
        account = new_account(store, "100")
        transaction = new_transaction(account.id, TransactionKind.AD_REWARD, "75")

        updated = store.apply_delta(account.id, Decimal("75"), transaction)

        assert updated.balance == Decimal("175.00")
        assert updated.total_earned == Decimal("75.00")
        assert updated.version == 1
        assert store.get_transaction(transaction.id).balance_after == Decimal("175.00")

    def test_debit_below_zero_leaves_no_trace(self):
        """Test that a rejected debit neither moves the balance nor appends a row."""
        store = InMemoryLedgerStore()
        account = new_account(store, "100")
        transaction = new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "100.01")

        with pytest.raises(InsufficientBalance) as excinfo:
            store.apply_delta(account.id, Decimal("-100.01"), transaction)

        assert excinfo.value.balance == Decimal("100")
        assert store.read_account(account.id).balance == Decimal("100")
        assert store.read_account(account.id).version == 0
        with pytest.raises(TransactionNotFound):
            store.get_transaction(transaction.id)

    def test_debit_to_exactly_zero_allowed(self):
        """Test that a debit may empty the account."""
        store = InMemoryLedgerStore()
        account = new_account(store, "100")
        transaction = new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "100")

        assert store.apply_delta(account.id, Decimal("-100"), transaction).balance == Decimal("0.00")

    def test_unknown_account(self):
        """Test that mutating a missing account fails."""
        store = InMemoryLedgerStore()
        missing = uuid4()

        with pytest.raises(AccountNotFound):
            store.apply_delta(missing, Decimal("1"), new_transaction(missing, TransactionKind.AD_REWARD, "1"))
        with pytest.raises(AccountNotFound):
            store.read_account(missing)

    def test_task_completion_guard(self):
        """Test that the same (account, task) pair settles only once."""
        store = InMemoryLedgerStore()
        account = new_account(store)
        task_id = uuid4()

        store.apply_delta(account.id, Decimal("200"),
                          new_transaction(account.id, TransactionKind.TASK_REWARD, "200"), task_id=task_id)
        with pytest.raises(TaskAlreadyCompleted):
            store.apply_delta(account.id, Decimal("200"),
                              new_transaction(account.id, TransactionKind.TASK_REWARD, "200"), task_id=task_id)

        assert store.read_account(account.id).balance == Decimal("200.00")
        assert store.get_completion(account.id, task_id) is not None

    def test_idempotency_guard_reports_existing_row(self):
        """Test that a repeated idempotency key points at the first row."""
        store = InMemoryLedgerStore()
        account = new_account(store, "10000")
        first = new_transaction(account.id, TransactionKind.DAILY_BONUS, "500", idempotency_key="k")

        store.apply_delta(account.id, Decimal("500"), first, idempotency_key="k")
        with pytest.raises(IdempotencyConflictError) as excinfo:
            store.apply_delta(account.id, Decimal("500"),
                              new_transaction(account.id, TransactionKind.DAILY_BONUS, "500"),
                              idempotency_key="k")

        assert excinfo.value.transaction_id == first.id
        assert store.read_account(account.id).balance == Decimal("10500.00")


class TestTransitions:
    """Tests for status transitions."""

    def test_confirm_pending_deposit_credits_net(self):
        """Test that confirming a deposit credits its net amount."""
        store = InMemoryLedgerStore()
        account = new_account(store)
        deposit = store.record_pending(new_transaction(
            account.id, TransactionKind.DEPOSIT, "8000", TransactionStatus.PENDING,
            net_amount=Decimal("7910"), tax_amount=Decimal("90"),
        ))

        confirmed = store.transition(deposit.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED,
                                     delta=Decimal("7910"))

        assert confirmed.status == TransactionStatus.COMPLETED
        assert confirmed.balance_after == Decimal("7910.00")
        assert store.read_account(account.id).total_earned == Decimal("7910.00")

    def test_transition_from_wrong_state(self):
        """Test that a transition checks the expected status."""
        store = InMemoryLedgerStore()
        account = new_account(store)
        deposit = store.record_pending(new_transaction(
            account.id, TransactionKind.DEPOSIT, "100", TransactionStatus.PENDING,
        ))
        store.transition(deposit.id, TransactionStatus.PENDING, TransactionStatus.FAILED)

        with pytest.raises(InvalidStateTransitionError):
            store.transition(deposit.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED,
                             delta=Decimal("100"))
        assert store.read_account(account.id).balance == Decimal("0")

    def test_compensation_appends_new_row(self):
        """Test that a compensated transition appends a separate row."""
        store = InMemoryLedgerStore()
        account = new_account(store, "60000")
        withdrawal = new_transaction(account.id, TransactionKind.WITHDRAWAL, "50000", TransactionStatus.PENDING)
        store.apply_delta(account.id, Decimal("-50000"), withdrawal)
        reversal = new_transaction(account.id, TransactionKind.REVERSAL, "50000",
                                   reference_transaction_id=withdrawal.id)

        failed = store.transition(withdrawal.id, TransactionStatus.PENDING, TransactionStatus.FAILED,
                                  delta=Decimal("50000"), compensation=reversal)

        assert failed.status == TransactionStatus.FAILED
        assert failed.balance_after == Decimal("10000.00")
        assert store.get_transaction(reversal.id).balance_after == Decimal("60000.00")
        assert store.read_account(account.id).balance == Decimal("60000.00")
        # Reversals are not earnings
        assert store.read_account(account.id).total_earned == Decimal("0")

    def test_unknown_transaction(self):
        """Test that transitioning a missing row fails."""
        store = InMemoryLedgerStore()

        with pytest.raises(TransactionNotFound):
            store.transition(uuid4(), TransactionStatus.PENDING, TransactionStatus.COMPLETED)


class TestConcurrency:
    """Tests for serialization of concurrent mutations."""

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

    def test_concurrent_debits_never_overdraw(self):
        """Test that concurrent debits totalling more than the balance partly fail."""
        store = InMemoryLedgerStore(lock_timeout=5.0)
        account = new_account(store, "1000")

        outcomes = self.run_concurrently(25, lambda i: store.apply_delta(
            account.id, Decimal("-100"),
            new_transaction(account.id, TransactionKind.ADMIN_DEBIT, "100"),
        ))

        succeeded = [o for o in outcomes if isinstance(o, Account)]
        rejected = [o for o in outcomes if isinstance(o, InsufficientBalance)]
        assert len(succeeded) == 10
        assert len(rejected) == 15
        assert store.read_account(account.id).balance == Decimal("0.00")
        assert len(store.list_transactions(account_id=account.id)) == 10

    def test_concurrent_credits_lose_no_update(self):
        """Test that concurrent credits all land."""
        store = InMemoryLedgerStore(lock_timeout=5.0)
        account = new_account(store)

        self.run_concurrently(50, lambda i: store.apply_delta(
            account.id, Decimal("10"),
            new_transaction(account.id, TransactionKind.AD_REWARD, "10"),
        ))

        updated = store.read_account(account.id)
        assert updated.balance == Decimal("500.00")
        assert updated.version == 50

    def test_concurrent_task_completion_settles_once(self):
        """Test that a double-clicked task completion pays once."""
        store = InMemoryLedgerStore(lock_timeout=5.0)
        account = new_account(store)
        task_id = uuid4()

        outcomes = self.run_concurrently(10, lambda i: store.apply_delta(
            account.id, Decimal("200"),
            new_transaction(account.id, TransactionKind.TASK_REWARD, "200"), task_id=task_id,
        ))

        assert sum(isinstance(o, Account) for o in outcomes) == 1
        assert sum(isinstance(o, TaskAlreadyCompleted) for o in outcomes) == 9
        assert store.read_account(account.id).balance == Decimal("200.00")

    def test_contention_gives_up_after_retries(self):
        """Test that a held account lock surfaces a retryable error."""
        store = InMemoryLedgerStore(lock_timeout=0.01, max_retries=2)
        account = new_account(store)
        store._account_locks[account.id].acquire()
        try:
            with pytest.raises(ConcurrentModificationRetryExceeded) as excinfo:
                store.apply_delta(account.id, Decimal("1"),
                                  new_transaction(account.id, TransactionKind.AD_REWARD, "1"))
        finally:
            store._account_locks[account.id].release()

        assert excinfo.value.attempts == 3
        assert excinfo.value.retryable is True
        assert store.read_account(account.id).balance == Decimal("0")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
