"""
Centralized backoff calculation.

The subscription synchronizer retries on a *missing* Stripe record rather
than on an exception, so callers own the loop and use calculate_delay()
for the wait between attempts. Keeping the loop explicit keeps the stack
flat and the attempt cap obvious.
"""

import logging
import random
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.0  # 0 = deterministic


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay before the retry that follows ``attempt`` (1-based).

    attempt=1 -> base * 2, attempt=2 -> base * 4, ... capped at max_delay.
    """
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)

    if config.jitter_factor:
        delay += random.uniform(0, delay * config.jitter_factor)
        delay = min(delay, config.max_delay)

    return delay


def retry_config_from_billing(config) -> RetryConfig:
    """Derive the subscription-visibility retry policy from BillingConfig."""
    return RetryConfig(
        max_attempts=max(1, config.sync_max_attempts),
        base_delay=config.sync_base_delay,
        max_delay=config.sync_max_delay,
    )
