import random
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ledger.config import Settings
from ledger.models import CENT, ZERO


class RewardPolicy(BaseModel):
    """Numeric policy for every settlement rule."""

    signup_bonus: Decimal = Field(default=Decimal("2500"), gt=0)
    ad_reward_min: int = Field(default=50, ge=0)
    ad_reward_max: int = Field(default=100, ge=0)
    deposit_tax_rate: Decimal = Decimal("0.03")
    deposit_tax_free_allowance: Decimal = Decimal("5000")
    daily_bonus_step: Decimal = Field(default=Decimal("10000"), gt=0)
    daily_bonus_rate: Decimal = Decimal("0.05")

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def check_ad_range(self) -> "RewardPolicy":
        if self.ad_reward_min > self.ad_reward_max:
            raise ValueError("ad_reward_min must not exceed ad_reward_max")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "RewardPolicy":
        return cls(
            signup_bonus=settings.signup_bonus,
            ad_reward_min=settings.ad_reward_min,
            ad_reward_max=settings.ad_reward_max,
            deposit_tax_rate=settings.deposit_tax_rate,
            deposit_tax_free_allowance=settings.deposit_tax_free_allowance,
            daily_bonus_step=settings.daily_bonus_step,
            daily_bonus_rate=settings.daily_bonus_rate,
        )


def deposit_tax(amount: Decimal, first_deposit: bool, policy: RewardPolicy) -> tuple[Decimal, Decimal]:
    """Return ``(tax, net)`` for a gross deposit.

    A first deposit (nothing earned yet) is tax-free up to the allowance and
    taxed only on the excess; later deposits are taxed in full.
    """
    if first_deposit:
        taxable = max(ZERO, amount - policy.deposit_tax_free_allowance)
    else:
        taxable = amount
    tax = (taxable * policy.deposit_tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return tax, amount - tax


def daily_bonus_rate(balance: Decimal, policy: RewardPolicy) -> Decimal:
    # One rate increment per complete step held
    steps = int(balance // policy.daily_bonus_step) if balance > 0 else 0
    return steps * policy.daily_bonus_rate


def daily_bonus_amount(balance: Decimal, policy: RewardPolicy) -> Decimal:
    return (balance * daily_bonus_rate(balance, policy)).quantize(CENT, rounding=ROUND_DOWN)


def draw_ad_reward(policy: RewardPolicy, rng: Optional[random.Random] = None) -> Decimal:
    rng = rng or random.SystemRandom()
    return Decimal(rng.randint(policy.ad_reward_min, policy.ad_reward_max)).quantize(CENT)
