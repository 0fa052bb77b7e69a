from decimal import Decimal
from typing import Optional
from uuid import UUID


class LedgerError(Exception):
    """Base for every domain rejection.

    ``reason`` is a stable code the presentation layer can switch on,
    ``status_code`` is the HTTP status the API maps the error to.
    """

    reason = "ledger_error"
    status_code = 400
    retryable = False


class AccountNotFound(LedgerError):
    reason = "account_not_found"
    status_code = 404

    def __init__(self, account_id: UUID):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class TransactionNotFound(LedgerError):
    reason = "transaction_not_found"
    status_code = 404

    def __init__(self, transaction_id: UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class TaskNotFound(LedgerError):
    reason = "task_not_found"
    status_code = 404

    def __init__(self, task_id: UUID):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TaskInactive(LedgerError):
    reason = "task_inactive"
    status_code = 409

    def __init__(self, task_id: UUID):
        self.task_id = task_id
        super().__init__(f"Task {task_id} is no longer active")


class BankAccountNotFound(LedgerError):
    reason = "bank_account_not_found"
    status_code = 404

    def __init__(self, bank_account_id: UUID):
        self.bank_account_id = bank_account_id
        super().__init__(f"Bank account {bank_account_id} not found")


class InsufficientBalance(LedgerError):
    reason = "insufficient_balance"
    status_code = 409

    def __init__(self, account_id: UUID, balance: Decimal, requested: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient balance: {balance} available, {requested} requested"
        )


class TaskAlreadyCompleted(LedgerError):
    reason = "task_already_completed"
    status_code = 409

    def __init__(self, account_id: UUID, task_id: UUID):
        self.account_id = account_id
        self.task_id = task_id
        super().__init__(f"Task {task_id} already completed by account {account_id}")


class BelowMinimumWithdrawal(LedgerError):
    reason = "below_minimum_withdrawal"

    def __init__(self, amount: Decimal, minimum: Decimal):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum withdrawal amount is {minimum:,}")


class AboveMaximumWithdrawal(LedgerError):
    reason = "above_maximum_withdrawal"

    def __init__(self, amount: Decimal, maximum: Decimal):
        self.amount = amount
        self.maximum = maximum
        super().__init__(f"Maximum withdrawal amount is {maximum:,}")


class UnverifiedDestination(LedgerError):
    reason = "unverified_destination"
    status_code = 422

    def __init__(self, bank_account_id: UUID, detail: str):
        self.bank_account_id = bank_account_id
        super().__init__(detail)


class ConcurrentModificationRetryExceeded(LedgerError):
    reason = "concurrent_modification"
    status_code = 503
    retryable = True

    def __init__(self, account_id: UUID, attempts: int):
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(
            f"Account {account_id} is busy, gave up after {attempts} attempts"
        )


class InvalidStateTransitionError(LedgerError):
    reason = "invalid_state_transition"
    status_code = 409


class IdempotencyConflictError(LedgerError):
    reason = "duplicate_settlement"
    status_code = 409

    def __init__(self, idempotency_key: str, transaction_id: Optional[UUID] = None):
        self.idempotency_key = idempotency_key
        self.transaction_id = transaction_id
        super().__init__(f"Settlement {idempotency_key} was already applied")


class RegistrationAlreadyPaid(LedgerError):
    reason = "registration_already_paid"
    status_code = 409

    def __init__(self, account_id: UUID):
        self.account_id = account_id
        super().__init__(f"Registration bonus already issued to account {account_id}")


class InvalidAmount(LedgerError):
    reason = "invalid_amount"
    status_code = 422


class UnknownSettlementRule(LedgerError):
    reason = "unknown_settlement_rule"
    status_code = 422

    def __init__(self, rule: str):
        self.rule = rule
        super().__init__(f"Unknown settlement rule: {rule}")


class InvalidSettlementParams(LedgerError):
    reason = "invalid_settlement_params"
    status_code = 422


class AdminAuthError(LedgerError):
    reason = "admin_auth_failed"
    status_code = 403

    def __init__(self, detail: str = "Access denied. Admin only."):
        super().__init__(detail)
