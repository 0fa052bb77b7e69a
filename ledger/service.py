import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from settlement.admission import WithdrawalAdmission, WithdrawalPolicy
from settlement.engine import SettlementEngine, SettlementRule, parse_cycle
from settlement.policy import RewardPolicy, deposit_tax

from .config import Settings, get_settings
from .errors import LedgerError
from .models import (
    Account,
    AddBankAccountRequest,
    AggregateStats,
    BankAccount,
    CreateTaskRequest,
    DailyBonusRunResult,
    DepositQuote,
    LedgerHistoryResponse,
    ReconciliationReport,
    RegisterAccountRequest,
    Task,
    Transaction,
    TransactionKind,
    TransactionStatus,
    ZERO,
    parse_amount,
)
from .reconciliation import ReconciliationView
from .store import InMemoryLedgerStore, LedgerStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> LedgerStore:
    if settings.database_url:
        from .sql_store import SqlLedgerStore
        return SqlLedgerStore(settings.database_url, max_retries=settings.max_retries)
    return InMemoryLedgerStore(lock_timeout=settings.lock_timeout, max_retries=settings.max_retries)


class LedgerService:
    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None,
                 engine: Optional[SettlementEngine] = None):
        self.settings = settings or get_settings()
        self.store = store or build_store(self.settings)
        self.engine = engine or SettlementEngine(
            self.store,
            policy=RewardPolicy.from_settings(self.settings),
            admission=WithdrawalAdmission(WithdrawalPolicy.from_settings(self.settings)),
        )
        self.reconciliation = ReconciliationView(self.store, max_staleness=self.settings.snapshot_max_staleness)

    # Accounts

    def register_account(self, request: RegisterAccountRequest) -> Account:
        now = datetime.now(timezone.utc)
        account = self.store.create_account(Account(
            id=uuid4(),
            display_name=request.display_name,
            email=request.email,
            created_at=now,
            updated_at=now,
        ))
        logger.info("Registered account %s", account.id)
        if request.registration_paid:
            self.confirm_registration(account.id)
            account = self.store.read_account(account.id)
        return account

    def confirm_registration(self, account_id: UUID) -> Transaction:
        return self.engine.settle(account_id, SettlementRule.REGISTRATION_BONUS)

    def get_account(self, account_id: UUID) -> Account:
        return self.store.read_account(account_id)

    def list_accounts(self) -> list[Account]:
        return self.store.list_accounts()

    def get_ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.store.read_account(account_id)
        entries = self.store.list_transactions(account_id=account_id)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=account.balance,
        )

    def list_transactions(self, kind: Optional[TransactionKind] = None,
                          status: Optional[TransactionStatus] = None) -> list[Transaction]:
        return self.store.list_transactions(kind=kind, status=status)

    # Settlement

    def settle(self, account_id: UUID, rule: str, params: Optional[dict[str, Any]] = None) -> Optional[Transaction]:
        return self.engine.settle(account_id, rule, params)

    def complete_task(self, account_id: UUID, task_id: UUID) -> Transaction:
        return self.engine.settle(account_id, SettlementRule.TASK_REWARD, {"task_id": task_id})

    def reward_ad_view(self, account_id: UUID) -> Transaction:
        return self.engine.settle(account_id, SettlementRule.AD_REWARD)

    def adjust_balance(self, account_id: UUID, amount: Decimal, debit: bool = False,
                       description: Optional[str] = None) -> Transaction:
        rule = SettlementRule.ADMIN_DEBIT if debit else SettlementRule.ADMIN_CREDIT
        return self.engine.settle(account_id, rule, {"amount": amount, "description": description})

    def run_daily_bonus(self, cycle: Optional[str] = None) -> DailyBonusRunResult:
        """Apply the daily bonus to every account for one cycle.

        Safe to re-run: accounts already settled for the cycle are skipped.
        """
        cycle = parse_cycle(cycle)
        processed = skipped = 0
        credited = ZERO
        for account in self.store.list_accounts():
            if account.last_bonus_cycle == cycle:
                skipped += 1
                continue
            try:
                transaction = self.engine.settle(account.id, SettlementRule.DAILY_BONUS, {"cycle": cycle})
            except LedgerError as e:
                logger.error("Daily bonus for account %s failed: %s", account.id, e)
                skipped += 1
                continue
            if transaction is None:
                skipped += 1
                continue
            processed += 1
            credited += transaction.amount
        logger.info("Processed daily bonus for %d accounts in cycle %s", processed, cycle)
        return DailyBonusRunResult(cycle=cycle, processed=processed, skipped=skipped, total_credited=credited)

    # Deposits

    def quote_deposit(self, account_id: UUID, amount: Decimal) -> DepositQuote:
        amount = parse_amount(amount)
        account = self.store.read_account(account_id)
        tax, net = deposit_tax(amount, account.is_first_deposit, self.engine.policy)
        return DepositQuote(amount=amount, tax_amount=tax, net_amount=net, first_deposit=account.is_first_deposit)

    def request_deposit(self, account_id: UUID, amount: Decimal, reference: Optional[str] = None) -> Transaction:
        return self.engine.settle(account_id, SettlementRule.DEPOSIT, {"amount": amount, "reference": reference})

    def confirm_deposit(self, transaction_id: UUID) -> Transaction:
        return self.engine.confirm_deposit(transaction_id)

    def fail_deposit(self, transaction_id: UUID) -> Transaction:
        return self.engine.fail_deposit(transaction_id)

    # Bank accounts and withdrawals

    def add_bank_account(self, account_id: UUID, request: AddBankAccountRequest) -> BankAccount:
        bank_account = BankAccount(
            id=uuid4(),
            account_id=account_id,
            bank_name=request.bank_name,
            account_number=request.account_number,
            account_holder=request.account_holder,
            created_at=datetime.now(timezone.utc),
        )
        return self.store.add_bank_account(bank_account)

    def list_bank_accounts(self, account_id: UUID) -> list[BankAccount]:
        self.store.read_account(account_id)
        return self.store.list_bank_accounts(account_id)

    def verify_bank_account(self, bank_account_id: UUID) -> BankAccount:
        bank_account = self.store.mark_bank_account_verified(bank_account_id)
        logger.info("Bank account %s verified", bank_account_id)
        return bank_account

    def request_withdrawal(self, account_id: UUID, amount: Decimal, bank_account_id: UUID) -> Transaction:
        return self.engine.request_withdrawal(account_id, amount, bank_account_id)

    def approve_withdrawal(self, transaction_id: UUID) -> Transaction:
        return self.engine.approve_withdrawal(transaction_id)

    def reject_withdrawal(self, transaction_id: UUID, reason: Optional[str] = None) -> Transaction:
        rejected, _ = self.engine.reject_withdrawal(transaction_id, reason)
        return rejected

    # Tasks

    def create_task(self, request: CreateTaskRequest) -> Task:
        task = Task(
            id=uuid4(),
            title=request.title,
            description=request.description,
            category=request.category,
            reward_amount=parse_amount(request.reward_amount, "reward_amount"),
            created_at=datetime.now(timezone.utc),
        )
        return self.store.add_task(task)

    def list_tasks(self, active_only: bool = True) -> list[Task]:
        return self.store.list_tasks(active_only=active_only)

    def deactivate_task(self, task_id: UUID) -> Task:
        return self.store.set_task_active(task_id, False)

    # Oversight

    def read_ledger_snapshot(self, refresh: bool = False) -> AggregateStats:
        return self.reconciliation.snapshot(refresh=refresh)

    def audit_ledger(self) -> ReconciliationReport:
        return self.reconciliation.audit()
