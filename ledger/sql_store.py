"""
SQL ledger store (SQLAlchemy 2.x).

Balance writes are a single conditional ``UPDATE ... WHERE balance + delta
>= 0`` inside one database transaction, so the non-negative check can never
be separated from the write. Task completions and idempotency keys are
guarded by unique constraints. Lock contention (``OperationalError``) is
retried a bounded number of times.
"""

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

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
from .store import LedgerStore, Repricer, bonus_cycle_of, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")
Money = Numeric(18, 2, asdecimal=True)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    display_name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    registration_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    last_bonus_cycle: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("accounts.id"), index=True)
    kind: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(Money)
    net_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    status: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[str] = mapped_column(String(500), default="")
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    task_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    bank_account_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    reference_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TaskRow(Base):
    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(String(2000), default="")
    category: Mapped[str] = mapped_column(String(32))
    reward_amount: Mapped[Decimal] = mapped_column(Money)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TaskCompletionRow(Base):
    __tablename__ = "task_completions"
    __table_args__ = (UniqueConstraint("account_id", "task_id", name="uq_task_completion"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("accounts.id"))
    task_id: Mapped[UUID] = mapped_column(ForeignKey("tasks.id"))
    transaction_id: Mapped[UUID] = mapped_column(Uuid)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class BankAccountRow(Base):
    __tablename__ = "bank_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("accounts.id"), index=True)
    bank_name: Mapped[str] = mapped_column(String(120))
    account_number: Mapped[str] = mapped_column(String(10))
    account_holder: Mapped[str] = mapped_column(String(200))
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _account(row: AccountRow) -> Account:
    return Account.model_validate(row)


def _transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        kind=TransactionKind(row.kind),
        amount=row.amount,
        net_amount=row.net_amount,
        tax_amount=row.tax_amount,
        status=TransactionStatus(row.status),
        description=row.description,
        balance_after=row.balance_after,
        task_id=row.task_id,
        bank_account_id=row.bank_account_id,
        reference_transaction_id=row.reference_transaction_id,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _is_contention(exc: OperationalError) -> bool:
    message = str(exc.orig).lower()
    return any(marker in message for marker in ("locked", "deadlock", "could not serialize", "busy"))


def _transaction_row(transaction: Transaction) -> TransactionRow:
    data = transaction.model_dump()
    data["kind"] = transaction.kind.value
    data["status"] = transaction.status.value
    return TransactionRow(**data)


class SqlLedgerStore(LedgerStore):
    def __init__(self, database_url: str, max_retries: int = 5, retry_backoff: float = 0.05, echo: bool = False):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        Base.metadata.create_all(self.engine)

    def _run(self, account_id: Optional[UUID], work: Callable[[Session], T]) -> T:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._session_factory.begin() as session:
                    return work(session)
            except OperationalError as exc:
                if not _is_contention(exc):
                    raise
                logger.warning("Ledger write contention for %s, attempt %d/%d: %s",
                               account_id, attempt, attempts, exc.orig)
                time.sleep(self.retry_backoff * attempt)
        raise ConcurrentModificationRetryExceeded(account_id, attempts)

    def _read(self, work: Callable[[Session], T]) -> T:
        with self._session_factory() as session:
            return work(session)

    # Accounts

    def create_account(self, account: Account) -> Account:
        def work(session: Session) -> Account:
            session.add(AccountRow(**account.model_dump()))
            return account
        return self._run(account.id, work)

    def read_account(self, account_id: UUID) -> Account:
        def work(session: Session) -> Account:
            row = session.get(AccountRow, account_id)
            if row is None:
                raise AccountNotFound(account_id)
            return _account(row)
        return self._read(work)

    def list_accounts(self) -> list[Account]:
        return self._read(lambda session: [
            _account(row) for row in session.scalars(select(AccountRow).order_by(AccountRow.created_at))
        ])

    def _post(self, session: Session, account_id: UUID, delta: Decimal,
              transaction: Transaction, now: datetime, registration: bool = False) -> AccountRow:
        delta = to_money(delta)
        earned = delta if delta > 0 and transaction.kind in EARNING_KINDS else Decimal("0")
        values = {
            "balance": AccountRow.balance + delta,
            "total_earned": AccountRow.total_earned + earned,
            "version": AccountRow.version + 1,
            "updated_at": now,
        }
        cycle = bonus_cycle_of(transaction)
        if cycle is not None:
            values["last_bonus_cycle"] = cycle
        stmt = update(AccountRow).where(AccountRow.id == account_id, AccountRow.balance + delta >= 0)
        if registration:
            values["registration_paid"] = True
            stmt = stmt.where(AccountRow.registration_paid.is_(False))

        result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        row = session.get(AccountRow, account_id, populate_existing=True)
        if result.rowcount == 0:
            if row is None:
                raise AccountNotFound(account_id)
            if registration and row.registration_paid:
                raise RegistrationAlreadyPaid(account_id)
            raise InsufficientBalance(account_id, row.balance, -delta)
        return row

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
        def work(session: Session) -> Account:
            if session.get(AccountRow, account_id) is None:
                raise AccountNotFound(account_id)
            if idempotency_key is not None:
                existing = session.scalar(
                    select(TransactionRow.id).where(TransactionRow.idempotency_key == idempotency_key)
                )
                if existing is not None:
                    raise IdempotencyConflictError(idempotency_key, existing)

            now = utcnow()
            row = self._post(session, account_id, delta, transaction, now, registration=registration)
            entry = _transaction_row(transaction)
            entry.balance_after = row.balance
            entry.updated_at = now
            if idempotency_key is not None:
                entry.idempotency_key = idempotency_key
            session.add(entry)
            if task_id is not None:
                session.add(TaskCompletionRow(
                    account_id=account_id, task_id=task_id,
                    transaction_id=transaction.id, completed_at=now,
                ))
            try:
                session.flush()
            except IntegrityError as exc:
                message = str(exc.orig).lower()
                if task_id is not None and ("task_completions" in message or "uq_task_completion" in message):
                    raise TaskAlreadyCompleted(account_id, task_id) from exc
                if idempotency_key is not None:
                    raise IdempotencyConflictError(idempotency_key) from exc
                raise
            return _account(row)
        return self._run(account_id, work)

    # Transactions

    def record_pending(self, transaction: Transaction) -> Transaction:
        def work(session: Session) -> Transaction:
            if session.get(AccountRow, transaction.account_id) is None:
                raise AccountNotFound(transaction.account_id)
            key = transaction.idempotency_key
            if key is not None:
                existing = session.scalar(select(TransactionRow.id).where(TransactionRow.idempotency_key == key))
                if existing is not None:
                    raise IdempotencyConflictError(key, existing)
            session.add(_transaction_row(transaction))
            return transaction
        return self._run(transaction.account_id, work)

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
        def work(session: Session) -> Transaction:
            # Claim the row with a conditional status update so two reviewers
            # cannot both move the same pending transaction.
            now = utcnow()
            claimed = session.execute(
                update(TransactionRow)
                .where(TransactionRow.id == transaction_id, TransactionRow.status == expected.value)
                .values(status=target.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            entry = session.get(TransactionRow, transaction_id, populate_existing=True)
            if entry is None:
                raise TransactionNotFound(transaction_id)
            if claimed.rowcount == 0:
                raise InvalidStateTransitionError(
                    f"Cannot move transaction {transaction_id} from {entry.status} "
                    f"to {target.value}; expected {expected.value}"
                )

            posted = delta
            if reprice is not None:
                # Row lock on the account so concurrent confirmations price in turn
                account_row = session.get(AccountRow, entry.account_id, with_for_update=True, populate_existing=True)
                repriced = reprice(_account(account_row), _transaction(entry))
                entry.net_amount = repriced.net_amount
                entry.tax_amount = repriced.tax_amount
                entry.description = repriced.description
                posted = repriced.effective_amount

            if compensation is not None:
                row = self._post(session, entry.account_id, posted, compensation, now)
                compensation_row = _transaction_row(compensation)
                compensation_row.balance_after = row.balance
                compensation_row.updated_at = now
                session.add(compensation_row)
            elif posted:
                row = self._post(session, entry.account_id, posted, _transaction(entry), now)
                entry.balance_after = row.balance
            return _transaction(entry)

        account_id = self._read(lambda session: session.scalar(
            select(TransactionRow.account_id).where(TransactionRow.id == transaction_id)
        ))
        return self._run(account_id, work)

    def get_transaction(self, transaction_id: UUID) -> Transaction:
        def work(session: Session) -> Transaction:
            row = session.get(TransactionRow, transaction_id)
            if row is None:
                raise TransactionNotFound(transaction_id)
            return _transaction(row)
        return self._read(work)

    def list_transactions(
        self,
        account_id: Optional[UUID] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        stmt = select(TransactionRow).order_by(TransactionRow.created_at.desc())
        if account_id is not None:
            stmt = stmt.where(TransactionRow.account_id == account_id)
        if kind is not None:
            stmt = stmt.where(TransactionRow.kind == kind.value)
        if status is not None:
            stmt = stmt.where(TransactionRow.status == status.value)
        return self._read(lambda session: [_transaction(row) for row in session.scalars(stmt)])

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        def work(session: Session) -> Optional[Transaction]:
            row = session.scalar(select(TransactionRow).where(TransactionRow.idempotency_key == idempotency_key))
            return _transaction(row) if row is not None else None
        return self._read(work)

    # Tasks

    def add_task(self, task: Task) -> Task:
        def work(session: Session) -> Task:
            data = task.model_dump()
            data["category"] = task.category.value
            session.add(TaskRow(**data))
            return task
        return self._run(None, work)

    def get_task(self, task_id: UUID) -> Task:
        def work(session: Session) -> Task:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFound(task_id)
            return Task.model_validate(row)
        return self._read(work)

    def list_tasks(self, active_only: bool = False) -> list[Task]:
        stmt = select(TaskRow).order_by(TaskRow.created_at)
        if active_only:
            stmt = stmt.where(TaskRow.is_active.is_(True))
        return self._read(lambda session: [Task.model_validate(row) for row in session.scalars(stmt)])

    def set_task_active(self, task_id: UUID, is_active: bool) -> Task:
        def work(session: Session) -> Task:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFound(task_id)
            row.is_active = is_active
            return Task.model_validate(row)
        return self._run(None, work)

    def get_completion(self, account_id: UUID, task_id: UUID) -> Optional[TaskCompletion]:
        def work(session: Session) -> Optional[TaskCompletion]:
            row = session.scalar(select(TaskCompletionRow).where(
                TaskCompletionRow.account_id == account_id, TaskCompletionRow.task_id == task_id,
            ))
            return TaskCompletion.model_validate(row) if row is not None else None
        return self._read(work)

    # Bank accounts

    def add_bank_account(self, bank_account: BankAccount) -> BankAccount:
        def work(session: Session) -> BankAccount:
            if session.get(AccountRow, bank_account.account_id) is None:
                raise AccountNotFound(bank_account.account_id)
            session.add(BankAccountRow(**bank_account.model_dump()))
            return bank_account
        return self._run(bank_account.account_id, work)

    def get_bank_account(self, bank_account_id: UUID) -> BankAccount:
        def work(session: Session) -> BankAccount:
            row = session.get(BankAccountRow, bank_account_id)
            if row is None:
                raise BankAccountNotFound(bank_account_id)
            return BankAccount.model_validate(row)
        return self._read(work)

    def list_bank_accounts(self, account_id: UUID) -> list[BankAccount]:
        stmt = select(BankAccountRow).where(BankAccountRow.account_id == account_id)
        return self._read(lambda session: [BankAccount.model_validate(row) for row in session.scalars(stmt)])

    def mark_bank_account_verified(self, bank_account_id: UUID) -> BankAccount:
        def work(session: Session) -> BankAccount:
            row = session.get(BankAccountRow, bank_account_id)
            if row is None:
                raise BankAccountNotFound(bank_account_id)
            row.is_verified = True
            return BankAccount.model_validate(row)
        return self._run(None, work)
