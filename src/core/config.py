"""
Ledger Configuration

Settings come from environment variables; every field has a development
default so a bare checkout runs against a local SQLite file.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from .credits import to_credits


def _env_decimal(name: str, default: str) -> Decimal:
    return to_credits(os.environ.get(name, default))


@dataclass
class LedgerConfig:
    """Configuration for the credit ledger."""
    database_url: str = "sqlite:///credit_ledger.db"
    api_key: str = "dev-key-change-in-production"

    # Fleet billing
    store_daily_service_key: str = "store_daily_publishing"
    domain_daily_service_key: str = "custom_domain"
    default_store_daily_cost: Decimal = Decimal("1.0000")
    default_domain_daily_cost: Decimal = Decimal("0.5000")

    # Purchases
    credits_per_usd: int = 10
    max_bonus_ratio: Decimal = Decimal("1.5")

    # Balance below this after a deduction logs a warning
    low_balance_threshold: Decimal = Decimal("5.0000")

    # Payment processor
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, database_url: Optional[str] = None) -> "LedgerConfig":
        """Build configuration from the process environment."""
        return cls(
            database_url=database_url or os.environ.get("DATABASE_URL", "sqlite:///credit_ledger.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            store_daily_service_key=os.environ.get("STORE_DAILY_SERVICE_KEY", "store_daily_publishing"),
            domain_daily_service_key=os.environ.get("DOMAIN_DAILY_SERVICE_KEY", "custom_domain"),
            default_store_daily_cost=_env_decimal("DEFAULT_STORE_DAILY_COST", "1.0"),
            default_domain_daily_cost=_env_decimal("DEFAULT_DOMAIN_DAILY_COST", "0.5"),
            credits_per_usd=int(os.environ.get("CREDITS_PER_USD", 10)),
            max_bonus_ratio=Decimal(os.environ.get("MAX_BONUS_RATIO", "1.5")),
            low_balance_threshold=_env_decimal("LOW_BALANCE_THRESHOLD", "5.0"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        )
