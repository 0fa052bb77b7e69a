import logging
import random
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from ledger.errors import (
    IdempotencyConflictError,
    InvalidSettlementParams,
    InvalidStateTransitionError,
    TaskInactive,
    UnknownSettlementRule,
)
from ledger.models import (
    Account,
    Transaction,
    TransactionKind,
    TransactionStatus,
    parse_amount,
    to_money,
)
from ledger.store import LedgerStore

from .admission import WithdrawalAdmission
from .policy import RewardPolicy, daily_bonus_amount, daily_bonus_rate, deposit_tax, draw_ad_reward

logger = logging.getLogger(__name__)


class SettlementRule(str, Enum):
    TASK_REWARD = "task_reward"
    AD_REWARD = "ad_reward"
    DAILY_BONUS = "daily_bonus"
    DEPOSIT = "deposit"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    REGISTRATION_BONUS = "registration_bonus"


def current_cycle() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def parse_cycle(value: Any = None) -> str:
    """Normalize a daily bonus cycle to an ISO date, defaulting to today (UTC).

    Cycles later than today are refused so a bonus cannot be paid ahead.
    """
    if value is None or value == "":
        return current_cycle()
    try:
        cycle = value if isinstance(value, date) else date.fromisoformat(str(value))
    except ValueError:
        raise InvalidSettlementParams(f"Cycle must be an ISO date (YYYY-MM-DD), got {value!r}")
    if cycle > datetime.now(timezone.utc).date():
        raise InvalidSettlementParams(f"Cycle {cycle.isoformat()} is in the future")
    return cycle.isoformat()


def daily_bonus_key(account_id: UUID, cycle: str) -> str:
    return f"daily_bonus:{account_id}:{cycle}"


def _amount_param(params: dict, name: str = "amount") -> Decimal:
    if name not in params or params[name] is None:
        raise InvalidSettlementParams(f"Missing required parameter: {name}")
    try:
        Decimal(str(params[name]))
    except InvalidOperation:
        raise InvalidSettlementParams(f"Parameter {name} must be a number")
    return parse_amount(params[name], name)


def _deposit_description(tax: Decimal, reference: Optional[str] = None, pending: bool = True) -> str:
    label = f"Deposit ref {reference}" if reference else "Deposit"
    if pending:
        return f"{label} - Tax: {tax:.2f} - Requires admin approval"
    return f"{label} - Tax: {tax:.2f}"


def _uuid_param(params: dict, name: str) -> UUID:
    value = params.get(name)
    if value is None:
        raise InvalidSettlementParams(f"Missing required parameter: {name}")
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidSettlementParams(f"Parameter {name} must be a UUID")


class SettlementEngine:
    """Turns a named rule into exactly one (delta, transaction) pair and
    submits it to the ledger store."""

    def __init__(
        self,
        store: LedgerStore,
        policy: Optional[RewardPolicy] = None,
        admission: Optional[WithdrawalAdmission] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.policy = policy or RewardPolicy()
        self.admission = admission or WithdrawalAdmission()
        self.rng = rng
        self.handlers: dict[SettlementRule, Callable[[UUID, dict], Optional[Transaction]]] = {
            SettlementRule.TASK_REWARD: self._settle_task_reward,
            SettlementRule.AD_REWARD: self._settle_ad_reward,
            SettlementRule.DAILY_BONUS: self._settle_daily_bonus,
            SettlementRule.DEPOSIT: self._settle_deposit,
            SettlementRule.ADMIN_CREDIT: self._settle_admin_credit,
            SettlementRule.ADMIN_DEBIT: self._settle_admin_debit,
            SettlementRule.REGISTRATION_BONUS: self._settle_registration_bonus,
        }

    def settle(self, account_id: UUID, rule: str, params: Optional[dict[str, Any]] = None) -> Optional[Transaction]:
        try:
            rule = SettlementRule(rule)
        except ValueError:
            raise UnknownSettlementRule(str(rule))
        transaction = self.handlers[rule](account_id, params or {})
        if transaction is not None:
            logger.info("Settled %s for account %s: %s %s (%s)", rule.value, account_id,
                        transaction.kind.value, transaction.amount, transaction.status.value)
        return transaction

    def _new_transaction(self, account_id: UUID, kind: TransactionKind, amount: Decimal,
                         status: TransactionStatus = TransactionStatus.COMPLETED, **fields) -> Transaction:
        return Transaction(
            id=uuid4(),
            account_id=account_id,
            kind=kind,
            amount=amount,
            status=status,
            created_at=datetime.now(timezone.utc),
            **fields,
        )

    def _apply(self, transaction: Transaction, delta: Decimal, **guards) -> Transaction:
        self.store.apply_delta(transaction.account_id, delta, transaction, **guards)
        return self.store.get_transaction(transaction.id)

    # Rule handlers

    def _settle_task_reward(self, account_id: UUID, params: dict) -> Transaction:
        task = self.store.get_task(_uuid_param(params, "task_id"))
        if not task.is_active:
            raise TaskInactive(task.id)
        transaction = self._new_transaction(
            account_id, TransactionKind.TASK_REWARD, task.reward_amount,
            task_id=task.id, description=f"Reward for completing task: {task.title}",
        )
        return self._apply(transaction, task.reward_amount, task_id=task.id)

    def _settle_ad_reward(self, account_id: UUID, params: dict) -> Transaction:
        amount = draw_ad_reward(self.policy, self.rng)
        transaction = self._new_transaction(
            account_id, TransactionKind.AD_REWARD, amount, description="Ad view reward",
        )
        return self._apply(transaction, amount)

    def _settle_daily_bonus(self, account_id: UUID, params: dict) -> Optional[Transaction]:
        cycle = parse_cycle(params.get("cycle"))
        key = daily_bonus_key(account_id, cycle)
        existing = self.store.find_by_idempotency_key(key)
        if existing is not None:
            return existing

        account = self.store.read_account(account_id)
        amount = daily_bonus_amount(account.balance, self.policy)
        if amount <= 0:
            return None
        rate = daily_bonus_rate(account.balance, self.policy)
        transaction = self._new_transaction(
            account_id, TransactionKind.DAILY_BONUS, amount,
            idempotency_key=key, description=f"Daily interest ({rate * 100:.2f}%)",
        )
        try:
            return self._apply(transaction, amount, idempotency_key=key)
        except IdempotencyConflictError:
            # Lost a race with another run of the same cycle
            return self.store.find_by_idempotency_key(key)

    def _settle_deposit(self, account_id: UUID, params: dict) -> Transaction:
        amount = _amount_param(params)
        account = self.store.read_account(account_id)
        tax, net = deposit_tax(amount, account.is_first_deposit, self.policy)
        reference = params.get("reference")
        # The quote is provisional; confirm_deposit prices it again
        transaction = self._new_transaction(
            account_id, TransactionKind.DEPOSIT, amount, TransactionStatus.PENDING,
            net_amount=net, tax_amount=tax, description=_deposit_description(tax, reference),
            idempotency_key=f"deposit:{reference}" if reference else None,
        )
        return self.store.record_pending(transaction)

    def _settle_admin_credit(self, account_id: UUID, params: dict) -> Transaction:
        amount = _amount_param(params)
        transaction = self._new_transaction(
            account_id, TransactionKind.ADMIN_CREDIT, amount,
            description=params.get("description") or "Admin balance credit",
        )
        return self._apply(transaction, amount)

    def _settle_admin_debit(self, account_id: UUID, params: dict) -> Transaction:
        amount = _amount_param(params)
        transaction = self._new_transaction(
            account_id, TransactionKind.ADMIN_DEBIT, amount,
            description=params.get("description") or "Admin balance debit",
        )
        return self._apply(transaction, -amount)

    def _settle_registration_bonus(self, account_id: UUID, params: dict) -> Transaction:
        amount = to_money(self.policy.signup_bonus)
        transaction = self._new_transaction(
            account_id, TransactionKind.REGISTRATION_BONUS, amount, description="Welcome bonus",
        )
        return self._apply(transaction, amount, registration=True)

    # Pending deposits

    def confirm_deposit(self, transaction_id: UUID) -> Transaction:
        """Credit a pending deposit.

        Tax is computed again from the account as it stands when the credit
        lands, so of several deposits requested before any was confirmed only
        the first one confirmed gets the tax-free allowance.
        """
        self._pending_of_kind(transaction_id, TransactionKind.DEPOSIT)
        confirmed = self.store.transition(
            transaction_id, TransactionStatus.PENDING, TransactionStatus.COMPLETED,
            reprice=self._price_deposit,
        )
        logger.info("Deposit %s confirmed, credited %s (tax %s) to account %s",
                    transaction_id, confirmed.effective_amount, confirmed.tax_amount, confirmed.account_id)
        return confirmed

    def _price_deposit(self, account: Account, deposit: Transaction) -> Transaction:
        tax, net = deposit_tax(deposit.amount, account.is_first_deposit, self.policy)
        reference = deposit.idempotency_key.split(":", 1)[1] if deposit.idempotency_key else None
        return deposit.model_copy(update={
            "net_amount": net,
            "tax_amount": tax,
            "description": _deposit_description(tax, reference, pending=False),
        })

    def fail_deposit(self, transaction_id: UUID) -> Transaction:
        self._pending_of_kind(transaction_id, TransactionKind.DEPOSIT)
        failed = self.store.transition(transaction_id, TransactionStatus.PENDING, TransactionStatus.FAILED)
        logger.info("Deposit %s marked failed", transaction_id)
        return failed

    # Withdrawals

    def request_withdrawal(self, account_id: UUID, amount: Decimal, bank_account_id: UUID) -> Transaction:
        amount = parse_amount(amount)
        account = self.store.read_account(account_id)
        destination = self.store.get_bank_account(bank_account_id)
        self.admission.admit(account, amount, destination)

        # Debit now so the same balance cannot back two pending withdrawals
        transaction = self._new_transaction(
            account_id, TransactionKind.WITHDRAWAL, amount, TransactionStatus.PENDING,
            bank_account_id=destination.id, description=f"Withdrawal to {destination.label}",
        )
        withdrawal = self._apply(transaction, -amount)
        logger.info("Withdrawal %s of %s requested by account %s", withdrawal.id, amount, account_id)
        return withdrawal

    def approve_withdrawal(self, transaction_id: UUID) -> Transaction:
        self._pending_of_kind(transaction_id, TransactionKind.WITHDRAWAL)
        approved = self.store.transition(transaction_id, TransactionStatus.PENDING, TransactionStatus.COMPLETED)
        logger.info("Withdrawal %s approved", transaction_id)
        return approved

    def reject_withdrawal(self, transaction_id: UUID, reason: Optional[str] = None) -> tuple[Transaction, Transaction]:
        """Fail a pending withdrawal and re-credit it with a compensating row."""
        withdrawal = self._pending_of_kind(transaction_id, TransactionKind.WITHDRAWAL)
        reversal = self._new_transaction(
            withdrawal.account_id, TransactionKind.REVERSAL, withdrawal.amount,
            reference_transaction_id=withdrawal.id,
            description=f"Reversal: {reason}" if reason else "Reversal of rejected withdrawal",
        )
        rejected = self.store.transition(
            transaction_id, TransactionStatus.PENDING, TransactionStatus.FAILED,
            delta=withdrawal.amount, compensation=reversal,
        )
        logger.info("Withdrawal %s rejected, %s returned to account %s",
                    transaction_id, withdrawal.amount, withdrawal.account_id)
        return rejected, self.store.get_transaction(reversal.id)

    def _pending_of_kind(self, transaction_id: UUID, kind: TransactionKind) -> Transaction:
        transaction = self.store.get_transaction(transaction_id)
        if transaction.kind != kind:
            raise InvalidStateTransitionError(
                f"Transaction {transaction_id} is a {transaction.kind.value}, not a {kind.value}"
            )
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Cannot review transaction {transaction_id} in {transaction.status.value} state"
            )
        return transaction
