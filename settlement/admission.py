import logging
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ledger.config import Settings
from ledger.errors import (
    AboveMaximumWithdrawal,
    BelowMinimumWithdrawal,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
    UnverifiedDestination,
)
from ledger.models import Account, BankAccount

logger = logging.getLogger(__name__)


class WithdrawalPolicy(BaseModel):
    minimum_withdrawal: Decimal = Field(default=Decimal("50000"), ge=0)
    maximum_withdrawal: Optional[Decimal] = None
    require_verified_destination: bool = True

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "WithdrawalPolicy":
        return cls(
            minimum_withdrawal=settings.minimum_withdrawal,
            maximum_withdrawal=settings.maximum_withdrawal,
            require_verified_destination=settings.require_verified_destination,
        )


class WithdrawalAdmission:
    """Pre-flight checks a withdrawal must pass before the ledger is touched.

    The balance check here only gives the caller an early, specific answer;
    the store re-checks it inside the atomic debit.
    """

    def __init__(self, policy: Optional[WithdrawalPolicy] = None):
        self.policy = policy or WithdrawalPolicy()

    def admit(self, account: Account, amount: Decimal, destination: BankAccount) -> None:
        try:
            self._check(account, amount, destination)
        except LedgerError as e:
            logger.info("Withdrawal of %s for account %s rejected: %s", amount, account.id, e.reason)
            raise

    def _check(self, account: Account, amount: Decimal, destination: BankAccount) -> None:
        if amount <= 0:
            raise InvalidAmount("Withdrawal amount must be positive")
        if amount < self.policy.minimum_withdrawal:
            raise BelowMinimumWithdrawal(amount, self.policy.minimum_withdrawal)
        if self.policy.maximum_withdrawal is not None and amount > self.policy.maximum_withdrawal:
            raise AboveMaximumWithdrawal(amount, self.policy.maximum_withdrawal)
        if amount > account.balance:
            raise InsufficientBalance(account.id, account.balance, amount)
        if destination.account_id != account.id:
            raise UnverifiedDestination(destination.id, "Bank account does not belong to this account")
        if self.policy.require_verified_destination and not destination.is_verified:
            raise UnverifiedDestination(destination.id, "Bank account has not been verified")
