import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "REWARDS_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


class Settings(BaseModel):
    """Process-wide configuration, read once from ``REWARDS_*`` variables."""

    signup_bonus: Decimal = Decimal("2500")
    minimum_withdrawal: Decimal = Decimal("50000")
    maximum_withdrawal: Optional[Decimal] = None
    require_verified_destination: bool = True

    ad_reward_min: int = 50
    ad_reward_max: int = 100
    deposit_tax_rate: Decimal = Decimal("0.03")
    deposit_tax_free_allowance: Decimal = Decimal("5000")
    daily_bonus_step: Decimal = Decimal("10000")
    daily_bonus_rate: Decimal = Decimal("0.05")

    lock_timeout: float = Field(default=0.5, gt=0)
    max_retries: int = Field(default=5, ge=0)
    snapshot_max_staleness: float = Field(default=30.0, ge=0)

    database_url: Optional[str] = None
    admin_password: Optional[str] = Field(default=None, repr=False)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        values: dict = {}
        for field_name in (
            "signup_bonus", "minimum_withdrawal", "maximum_withdrawal",
            "deposit_tax_rate", "deposit_tax_free_allowance",
            "daily_bonus_step", "daily_bonus_rate",
            "ad_reward_min", "ad_reward_max",
            "lock_timeout", "max_retries", "snapshot_max_staleness",
            "database_url", "admin_password", "log_level",
        ):
            raw = _env(field_name.upper())
            if raw is not None:
                values[field_name] = raw

        verified = _env("REQUIRE_VERIFIED_DESTINATION")
        if verified is not None:
            values["require_verified_destination"] = verified.lower() in ("1", "true", "yes", "on")

        origins = _env("CORS_ORIGINS")
        if origins is not None:
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

        # postgres:// URLs from hosting providers need the SQLAlchemy dialect name
        url = values.get("database_url")
        if url and url.startswith("postgres://"):
            values["database_url"] = url.replace("postgres://", "postgresql://", 1)

        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
