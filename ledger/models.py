from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest value a Numeric(18, 2) column holds
MAX_AMOUNT = Decimal("9999999999999999.99")


def to_money(value: Any) -> Decimal:
    """Coerce to a Decimal rounded half-up to cents."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any, name: str = "amount") -> Decimal:
    """Validate a positive money amount and round it to cents.

    Raises ``InvalidAmount`` for anything that is not a finite number in
    ``(0, MAX_AMOUNT]``.
    """
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"{name} must be a number no larger than {MAX_AMOUNT:,}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"{name} must be positive")
    if amount > MAX_AMOUNT:
        raise InvalidAmount(f"{name} must be no larger than {MAX_AMOUNT:,}")
    return amount


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TASK_REWARD = "task_reward"
    AD_REWARD = "ad_reward"
    DAILY_BONUS = "daily_bonus"
    ADMIN_CREDIT = "admin_credit"
    ADMIN_DEBIT = "admin_debit"
    REGISTRATION_BONUS = "registration_bonus"
    REVERSAL = "reversal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskCategory(str, Enum):
    AD_WATCH = "ad_watch"
    SOCIAL_MEDIA_LIKE = "social_media_like"
    SURVEY = "survey"
    OTHER = "other"


DEBIT_KINDS = frozenset({TransactionKind.WITHDRAWAL, TransactionKind.ADMIN_DEBIT})

# Credits that count toward total_earned. The seeded signup bonus and
# compensating reversals are not earnings.
EARNING_KINDS = frozenset({
    TransactionKind.DEPOSIT,
    TransactionKind.TASK_REWARD,
    TransactionKind.AD_REWARD,
    TransactionKind.DAILY_BONUS,
    TransactionKind.ADMIN_CREDIT,
})


class Account(BaseModel):
    id: UUID
    display_name: str
    email: Optional[str] = None
    balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    registration_paid: bool = False
    last_bonus_cycle: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_first_deposit(self) -> bool:
        return self.total_earned == 0


class Transaction(BaseModel):
    id: UUID
    account_id: UUID
    kind: TransactionKind
    amount: Decimal = Field(..., gt=0, description="Gross magnitude, direction implied by kind")
    net_amount: Optional[Decimal] = None
    tax_amount: Decimal = ZERO
    status: TransactionStatus
    description: str = ""
    balance_after: Optional[Decimal] = None
    task_id: Optional[UUID] = None
    bank_account_id: Optional[UUID] = None
    reference_transaction_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def effective_amount(self) -> Decimal:
        return self.amount if self.net_amount is None else self.net_amount

    @property
    def signed_amount(self) -> Decimal:
        if self.kind in DEBIT_KINDS:
            return -self.effective_amount
        return self.effective_amount

    @property
    def affects_balance(self) -> bool:
        # Withdrawals debit at request time, so a pending or rejected one has
        # already moved the balance (a rejected one is offset by its reversal).
        if self.kind == TransactionKind.WITHDRAWAL:
            return True
        return self.status == TransactionStatus.COMPLETED


class Task(BaseModel):
    id: UUID
    title: str
    description: str = ""
    category: TaskCategory = TaskCategory.OTHER
    reward_amount: Decimal = Field(..., gt=0)
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TaskCompletion(BaseModel):
    account_id: UUID
    task_id: UUID
    transaction_id: UUID
    completed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BankAccount(BaseModel):
    id: UUID
    account_id: UUID
    bank_name: str
    account_number: str
    account_holder: str
    is_verified: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def label(self) -> str:
        return f"{self.bank_name} - {self.account_number}"


class AggregateStats(BaseModel):
    total_accounts: int
    total_transactions: int
    total_balance: Decimal
    pending_withdrawals: int = 0
    pending_deposits: int = 0
    generated_at: datetime


class AccountDiscrepancy(BaseModel):
    account_id: UUID
    stored_balance: Decimal
    computed_balance: Decimal
    issues: list[str]


class ReconciliationReport(BaseModel):
    checked: int
    anomalies: list[AccountDiscrepancy]
    generated_at: datetime

    @property
    def is_clean(self) -> bool:
        return not self.anomalies


# Request / response bodies for the HTTP layer

class RegisterAccountRequest(BaseModel):
    display_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    registration_paid: bool = Field(
        default=True, description="Registration fee already collected by the payment gateway"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {"display_name": "Ada Obi", "email": "ada@example.com", "registration_paid": True}
    })


class SettleRequest(BaseModel):
    rule: str = Field(..., description="Settlement rule name, e.g. task_reward or daily_bonus")
    params: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {"rule": "task_reward", "params": {"task_id": "11111111-1111-1111-1111-111111111111"}}
    })


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reference: Optional[str] = Field(default=None, description="Payment gateway reference")


class DepositQuote(BaseModel):
    amount: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    first_deposit: bool


class AddBankAccountRequest(BaseModel):
    bank_name: str = Field(..., min_length=1)
    account_number: str
    account_holder: str = Field(..., min_length=1)

    @field_validator("account_number")
    @classmethod
    def ten_digits(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 10 or not value.isdigit():
            raise ValueError("account number must be exactly 10 digits")
        return value


class WithdrawalRequestBody(BaseModel):
    amount: Decimal = Field(..., gt=0)
    bank_account_id: UUID


class ReviewRequest(BaseModel):
    reason: Optional[str] = None


class AdjustmentDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class AdminAdjustmentRequest(BaseModel):
    direction: AdjustmentDirection
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None


class CreateTaskRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    category: TaskCategory = TaskCategory.OTHER
    reward_amount: Decimal = Field(..., gt=0)


class DailyBonusRunRequest(BaseModel):
    cycle: Optional[str] = Field(default=None, description="Settlement cycle, defaults to today's UTC date")


class DailyBonusRunResult(BaseModel):
    cycle: str
    processed: int
    skipped: int
    total_credited: Decimal


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal
