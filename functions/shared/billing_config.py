"""
Billing configuration loaded from the environment.

Price ids and amount thresholds change with every pricing revision, so
they are configuration rather than literals. Handlers build one
BillingConfig per cold start and pass it to the classifier, resolver,
synchronizer and sweep.
"""

import os
from dataclasses import dataclass

from .constants import LONG_CYCLE, PERPETUAL


def _env_int(name: str, default: int) -> int:
    # Use `or` to handle empty string env vars (IaC fallback sets "")
    return int(os.environ.get(name) or default)


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name) or default)


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name) or default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class BillingConfig:
    """Product and reconciliation settings."""

    perpetual_price_id: str = "price_perpetual"
    short_cycle_price_id: str = "price_short_cycle"
    long_cycle_price_ids: tuple[str, ...] = ("price_long_cycle",)

    # Minor units (cents)
    perpetual_amount_threshold: int = 9900
    long_cycle_amount_threshold: int = 2000

    # Fallback period windows when no Stripe subscription exists
    fallback_period_days: int = 30
    long_cycle_fallback_period_days: int = 30

    # Subscription visibility retry (Stripe eventual consistency)
    sync_max_attempts: int = 3
    sync_base_delay: float = 1.0
    sync_max_delay: float = 10.0

    payment_method_list_limit: int = 3

    # Reconciliation sweep
    sweep_lookback_hours: int = 2
    sweep_batch_limit: int = 25
    sweep_item_delay: float = 1.0
    stuck_subscription_minutes: int = 15

    @property
    def default_long_cycle_price_id(self) -> str:
        return self.long_cycle_price_ids[0] if self.long_cycle_price_ids else self.short_cycle_price_id

    def default_price_for_tier(self, tier: str | None) -> str:
        """Price id used when a record has to be synthesized for a tier."""
        if tier == PERPETUAL:
            return self.perpetual_price_id
        if tier == LONG_CYCLE:
            return self.default_long_cycle_price_id
        return self.short_cycle_price_id

    def fallback_days_for_tier(self, tier: str | None) -> int:
        if tier == LONG_CYCLE:
            return self.long_cycle_fallback_period_days
        return self.fallback_period_days

    @classmethod
    def from_env(cls) -> "BillingConfig":
        """Build configuration from environment variables."""
        return cls(
            perpetual_price_id=os.environ.get("PERPETUAL_PRICE_ID") or "price_perpetual",
            short_cycle_price_id=os.environ.get("SHORT_CYCLE_PRICE_ID") or "price_short_cycle",
            long_cycle_price_ids=_env_list("LONG_CYCLE_PRICE_IDS", "price_long_cycle"),
            perpetual_amount_threshold=_env_int("PERPETUAL_AMOUNT_THRESHOLD", 9900),
            long_cycle_amount_threshold=_env_int("LONG_CYCLE_AMOUNT_THRESHOLD", 2000),
            fallback_period_days=_env_int("FALLBACK_PERIOD_DAYS", 30),
            long_cycle_fallback_period_days=_env_int("LONG_CYCLE_FALLBACK_PERIOD_DAYS", 30),
            sync_max_attempts=_env_int("SYNC_MAX_ATTEMPTS", 3),
            sync_base_delay=_env_float("SYNC_BASE_DELAY_SECONDS", 1.0),
            sync_max_delay=_env_float("SYNC_MAX_DELAY_SECONDS", 10.0),
            payment_method_list_limit=_env_int("PAYMENT_METHOD_LIST_LIMIT", 3),
            sweep_lookback_hours=_env_int("SWEEP_LOOKBACK_HOURS", 2),
            sweep_batch_limit=_env_int("SWEEP_BATCH_LIMIT", 25),
            sweep_item_delay=_env_float("SWEEP_ITEM_DELAY_SECONDS", 1.0),
            stuck_subscription_minutes=_env_int("STUCK_SUBSCRIPTION_MINUTES", 15),
        )
