"""
Ledger storage.

``LedgerStore`` is the contract every backend honours: each balance
mutation (read, non-negative check, write, transaction append) is one atomic
unit that no other mutation of the same account may interleave with.
``InMemoryLedgerStore`` serializes per account with a lock; the SQL backend
lives in ``ledger.sql_store``.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import UUID

from .errors import (
    AccountNotFound,
    BankAccountNotFound,
    ConcurrentModificationRetryExceeded,
    IdempotencyConflictError,
    InsufficientBalance,
    InvalidStateTransitionError,
    RegistrationAlreadyPaid,
    TaskAlreadyCompleted,
    TaskNotFound,
    TransactionNotFound,
)
from .models import (
    EARNING_KINDS,
    Account,
    BankAccount,
    Task,
    TaskCompletion,
    Transaction,
    TransactionKind,
    TransactionStatus,
    to_money,
)

logger = logging.getLogger(__name__)

Repricer = Callable[[Account, Transaction], Transaction]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bonus_cycle_of(transaction: Transaction) -> Optional[str]:
    """Cycle a daily bonus row settles, encoded in its idempotency key."""
    if transaction.kind != TransactionKind.DAILY_BONUS or not transaction.idempotency_key:
        return None
    return transaction.idempotency_key.rsplit(":", 1)[-1]


class LedgerStore(ABC):
    @abstractmethod
    def create_account(self, account: Account) -> Account: ...

    @abstractmethod
    def read_account(self, account_id: UUID) -> Account: ...

    @abstractmethod
    def list_accounts(self) -> list[Account]: ...

    @abstractmethod
    def apply_delta(
        self,
        account_id: UUID,
        delta: Decimal,
        transaction: Transaction,
        *,
        task_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        registration: bool = False,
    ) -> Account:
        """Move the balance by ``delta`` and append ``transaction`` atomically.

        Raises ``AccountNotFound``, ``InsufficientBalance`` (checked inside
        the atomic unit), ``TaskAlreadyCompleted`` when ``task_id`` was
        already completed by the account, ``IdempotencyConflictError`` when
        ``idempotency_key`` was already applied, ``RegistrationAlreadyPaid``
        when ``registration`` is set on a paid account, and
        ``ConcurrentModificationRetryExceeded`` on persistent contention.
        """

    @abstractmethod
    def record_pending(self, transaction: Transaction) -> Transaction: ...

    @abstractmethod
    def transition(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        target: TransactionStatus,
        *,
        delta: Decimal = Decimal("0"),
        compensation: Optional[Transaction] = None,
        reprice: Optional[Repricer] = None,
    ) -> Transaction:
        """Advance a row's status, optionally moving the owner's balance and
        appending a compensating row, as one atomic unit.

        ``reprice`` receives the account as it stands inside the unit and the
        row, and returns the row with new ``net_amount`` / ``tax_amount`` /
        ``description``; its effective amount replaces ``delta``.
        """

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Transaction: ...

    @abstractmethod
    def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]: ...

    @abstractmethod
    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]: ...

    @abstractmethod
    def add_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: UUID) -> Task: ...

    @abstractmethod
    def list_tasks(self, active_only: bool = False) -> list[Task]: ...

    @abstractmethod
    def set_task_active(self, task_id: UUID, is_active: bool) -> Task: ...

    @abstractmethod
    def get_completion(self, account_id: UUID, task_id: UUID) -> Optional[TaskCompletion]: ...

    @abstractmethod
    def add_bank_account(self, bank_account: BankAccount) -> BankAccount: ...

    @abstractmethod
    def get_bank_account(self, bank_account_id: UUID) -> BankAccount: ...

    @abstractmethod
    def list_bank_accounts(self, account_id: UUID) -> list[BankAccount]: ...

    @abstractmethod
    def mark_bank_account_verified(self, bank_account_id: UUID) -> BankAccount: ...


class InMemoryLedgerStore(LedgerStore):
    def __init__(self, lock_timeout: float = 0.5, max_retries: int = 5):
        self.lock_timeout = lock_timeout
        self.max_retries = max_retries
        self.accounts: dict[UUID, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.tasks: dict[UUID, dict] = {}
        self.bank_accounts: dict[UUID, dict] = {}
        self.completions: dict[tuple[UUID, UUID], dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self._registry_lock = threading.Lock()
        self._account_locks: dict[UUID, threading.Lock] = {}

    # Accounts

    def create_account(self, account: Account) -> Account:
        with self._registry_lock:
            self.accounts[account.id] = account.model_dump()
            self._account_locks[account.id] = threading.Lock()
        return account

    def read_account(self, account_id: UUID) -> Account:
        account_data = self.accounts.get(account_id)
        if account_data is None:
            raise AccountNotFound(account_id)
        return Account(**account_data)

    def list_accounts(self) -> list[Account]:
        with self._registry_lock:
            rows = list(self.accounts.values())
        return [Account(**row) for row in rows]

    @contextmanager
    def _locked(self, account_id: UUID) -> Iterator[dict]:
        lock = self._account_locks.get(account_id)
        if lock is None or account_id not in self.accounts:
            raise AccountNotFound(account_id)
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            if lock.acquire(timeout=self.lock_timeout):
                try:
                    yield self.accounts[account_id]
                finally:
                    lock.release()
                return
            logger.warning("Account %s busy, attempt %d/%d", account_id, attempt, attempts)
        raise ConcurrentModificationRetryExceeded(account_id, attempts)

    def _post(self, account_data: dict, delta: Decimal, transaction: Transaction, now: datetime) -> dict:
        """Write a delta into a locked account row and stamp the transaction."""
        delta = to_money(delta)
        new_balance = account_data["balance"] + delta
        if new_balance < 0:
            raise InsufficientBalance(account_data["id"], account_data["balance"], -delta)

        account_data["balance"] = new_balance
        if delta > 0 and transaction.kind in EARNING_KINDS:
            account_data["total_earned"] = account_data["total_earned"] + delta
        cycle = bonus_cycle_of(transaction)
        if cycle is not None:
            account_data["last_bonus_cycle"] = cycle
        account_data["version"] += 1
        account_data["updated_at"] = now

        entry_data = transaction.model_dump()
        entry_data["balance_after"] = new_balance
        entry_data["updated_at"] = now
        return entry_data

    def apply_delta(
        self,
        account_id: UUID,
        delta: Decimal,
        transaction: Transaction,
        *,
        task_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        registration: bool = False,
    ) -> Account:
        with self._locked(account_id) as account_data:
            if idempotency_key is not None and idempotency_key in self.idempotency_index:
                raise IdempotencyConflictError(idempotency_key, self.idempotency_index[idempotency_key])
            if task_id is not None and (account_id, task_id) in self.completions:
                raise TaskAlreadyCompleted(account_id, task_id)
            if registration and account_data["registration_paid"]:
                raise RegistrationAlreadyPaid(account_id)

            # Validate on a copy so a rejected delta leaves the row untouched
            now = utcnow()
            staged = dict(account_data)
            entry_data = self._post(staged, delta, transaction, now)
            if registration:
                staged["registration_paid"] = True

            account_data.update(staged)
            self.transactions[transaction.id] = entry_data
            if idempotency_key is not None:
                self.idempotency_index[idempotency_key] = transaction.id
            if task_id is not None:
                self.completions[(account_id, task_id)] = {
                    "account_id": account_id,
                    "task_id": task_id,
                    "transaction_id": transaction.id,
                    "completed_at": now,
                }
            return Account(**account_data)

    # Transactions

    def record_pending(self, transaction: Transaction) -> Transaction:
        key = transaction.idempotency_key
        with self._locked(transaction.account_id):
            if key is not None and key in self.idempotency_index:
                raise IdempotencyConflictError(key, self.idempotency_index[key])
            entry_data = transaction.model_dump()
            self.transactions[transaction.id] = entry_data
            if key is not None:
                self.idempotency_index[key] = transaction.id
            return Transaction(**entry_data)

    def transition(
        self,
        transaction_id: UUID,
        expected: TransactionStatus,
        target: TransactionStatus,
        *,
        delta: Decimal = Decimal("0"),
        compensation: Optional[Transaction] = None,
        reprice: Optional[Repricer] = None,
    ) -> Transaction:
        entry_data = self.transactions.get(transaction_id)
        if entry_data is None:
            raise TransactionNotFound(transaction_id)

        with self._locked(entry_data["account_id"]) as account_data:
            if entry_data["status"] != expected:
                raise InvalidStateTransitionError(
                    f"Cannot move transaction {transaction_id} from {entry_data['status'].value} "
                    f"to {target.value}; expected {expected.value}"
                )

            now = utcnow()
            staged = dict(account_data)
            entry_update = {}
            if reprice is not None:
                repriced = reprice(Account(**account_data), Transaction(**entry_data))
                entry_update = {
                    "net_amount": repriced.net_amount,
                    "tax_amount": repriced.tax_amount,
                    "description": repriced.description,
                }
                delta = repriced.effective_amount
            compensation_data = None
            if compensation is not None:
                compensation_data = self._post(staged, delta, compensation, now)
            elif delta:
                self._post(staged, delta, Transaction(**{**entry_data, **entry_update}), now)

            account_data.update(staged)
            entry_data.update(entry_update)
            entry_data["status"] = target
            entry_data["updated_at"] = now
            if delta and compensation is None:
                entry_data["balance_after"] = staged["balance"]
            if compensation_data is not None:
                self.transactions[compensation.id] = compensation_data
            return Transaction(**entry_data)

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        entry_data = self.transactions.get(transaction_id)
        if entry_data is None:
            raise TransactionNotFound(transaction_id)
        return Transaction(**entry_data)

    def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        entries = [
            Transaction(**e) for e in list(self.transactions.values())
            if (account_id is None or e["account_id"] == account_id)
            and (kind is None or e["kind"] == kind)
            and (status is None or e["status"] == status)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        transaction_id = self.idempotency_index.get(idempotency_key)
        if transaction_id is None:
            return None
        return self.get_transaction(transaction_id)

    # Tasks

    def add_task(self, task: Task) -> Task:
        self.tasks[task.id] = task.model_dump()
        return task

    def get_task(self, task_id: UUID) -> Task:
        task_data = self.tasks.get(task_id)
        if task_data is None:
            raise TaskNotFound(task_id)
        return Task(**task_data)

    def list_tasks(self, active_only: bool = False) -> list[Task]:
        tasks = [Task(**t) for t in self.tasks.values() if t["is_active"] or not active_only]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def set_task_active(self, task_id: UUID, is_active: bool) -> Task:
        task_data = self.tasks.get(task_id)
        if task_data is None:
            raise TaskNotFound(task_id)
        task_data["is_active"] = is_active
        return Task(**task_data)

    def get_completion(self, account_id: UUID, task_id: UUID) -> Optional[TaskCompletion]:
        completion = self.completions.get((account_id, task_id))
        return TaskCompletion(**completion) if completion else None

    # Bank accounts

    def add_bank_account(self, bank_account: BankAccount) -> BankAccount:
        if bank_account.account_id not in self.accounts:
            raise AccountNotFound(bank_account.account_id)
        self.bank_accounts[bank_account.id] = bank_account.model_dump()
        return bank_account

    def get_bank_account(self, bank_account_id: UUID) -> BankAccount:
        data = self.bank_accounts.get(bank_account_id)
        if data is None:
            raise BankAccountNotFound(bank_account_id)
        return BankAccount(**data)

    def list_bank_accounts(self, account_id: UUID) -> list[BankAccount]:
        return [BankAccount(**b) for b in self.bank_accounts.values() if b["account_id"] == account_id]

    def mark_bank_account_verified(self, bank_account_id: UUID) -> BankAccount:
        data = self.bank_accounts.get(bank_account_id)
        if data is None:
            raise BankAccountNotFound(bank_account_id)
        data["is_verified"] = True
        return BankAccount(**data)
