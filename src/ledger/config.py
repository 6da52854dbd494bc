"""Engine configuration."""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LedgerConfig:
    """Configuration for the quota ledger."""
    details_limit: int = 100  # Max rows returned by details()
    details_lookback_months: int = 1  # Expired grants stay visible this long
    gift_expiry_days: int = 30  # Signup / bind-phone / invite gifts
    referral_bonus_expiry_days: int = 30
    usage_history_days: int = 30  # Default window for usage history

    @classmethod
    def from_env(cls, prefix: str = "QUOTA_") -> "LedgerConfig":
        """Override defaults from QUOTA_* environment variables."""
        def _int(name: str, default: int) -> int:
            value: Optional[str] = os.environ.get(prefix + name)
            return int(value) if value else default

        defaults = cls()
        return cls(
            details_limit=_int("DETAILS_LIMIT", defaults.details_limit),
            details_lookback_months=_int("DETAILS_LOOKBACK_MONTHS", defaults.details_lookback_months),
            gift_expiry_days=_int("GIFT_EXPIRY_DAYS", defaults.gift_expiry_days),
            referral_bonus_expiry_days=_int("REFERRAL_BONUS_EXPIRY_DAYS", defaults.referral_bonus_expiry_days),
            usage_history_days=_int("USAGE_HISTORY_DAYS", defaults.usage_history_days),
        )
