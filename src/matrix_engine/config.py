"""Configuration management for the matrix engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv


@dataclass(frozen=True)
class EngineConfig:
    """
    System-wide payout and placement behaviour.

    Attributes:
        reserve_percent: Percentage of every bonus withheld into the
            member's reserve instead of the payable balance. Default 0.
        non_matrix_match: If True, matching bonuses are paid even when the
            sponsor has no ACTIVE position at the plan level. Default False.
        allow_sponsor_lookup: If True and the direct sponsor has no ACTIVE
            position, walk up the sponsor's own referral chain. Default False.
        sponsor_lookup_hops: Maximum hops for the sponsor chain walk. Default 5.
        free_referral_bonus: If True, PENDING members of type FREE still
            receive referral bonuses. Default False.
        auto_withdraw: If True, every credited bonus queues an automatic
            disbursement to the member's wallet. Default False.
        currency: Currency code passed to the withdrawal dispatcher.
        batch_size: Events processed per scheduled run. Default 24.
        cross_entry_spacing: Minimum spacing between cross-plan entries for
            the same (owner, level) pair. Default 3 minutes.
        reentry_exempt_usernames: Accounts that never receive re-entries or
            cross entries (house accounts).
    """

    reserve_percent: Decimal = Decimal("0")
    non_matrix_match: bool = False
    allow_sponsor_lookup: bool = False
    sponsor_lookup_hops: int = 5
    free_referral_bonus: bool = False
    auto_withdraw: bool = False
    currency: str = "TRX"
    batch_size: int = 24
    cross_entry_spacing: timedelta = timedelta(minutes=3)
    reentry_exempt_usernames: tuple[str, ...] = field(default=("admin",))

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not Decimal("0") <= self.reserve_percent <= Decimal("100"):
            raise ValueError("reserve_percent must be between 0 and 100")
        if self.sponsor_lookup_hops < 0:
            raise ValueError("sponsor_lookup_hops cannot be negative")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.cross_entry_spacing < timedelta(0):
            raise ValueError("cross_entry_spacing cannot be negative")
        if not self.currency:
            raise ValueError("currency is required")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    plans_file: str
    run_interval_seconds: int
    log_level: str
    engine: EngineConfig

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        exempt = os.getenv("REENTRY_EXEMPT_USERNAMES", "admin")

        return cls(
            database_url=os.getenv(
                "DATABASE_URL",
                "sqlite+aiosqlite:///./matrix_engine.db",
            ),
            plans_file=os.getenv("PLANS_FILE", "plans.json"),
            run_interval_seconds=int(os.getenv("RUN_INTERVAL_SECONDS", "120")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            engine=EngineConfig(
                reserve_percent=Decimal(os.getenv("RESERVE_PERCENT", "0")),
                non_matrix_match=_env_bool("NON_MATRIX_MATCH"),
                allow_sponsor_lookup=_env_bool("ALLOW_SPONSOR_LOOKUP"),
                sponsor_lookup_hops=int(os.getenv("SPONSOR_LOOKUP_HOPS", "5")),
                free_referral_bonus=_env_bool("FREE_REFERRAL_BONUS"),
                auto_withdraw=_env_bool("AUTO_WITHDRAW"),
                currency=os.getenv("PAYOUT_CURRENCY", "TRX"),
                batch_size=int(os.getenv("BATCH_SIZE", "24")),
                cross_entry_spacing=timedelta(
                    seconds=int(os.getenv("CROSS_ENTRY_SPACING_SECONDS", "180"))
                ),
                reentry_exempt_usernames=tuple(
                    name.strip() for name in exempt.split(",") if name.strip()
                ),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()
