"""
Purchase tier classification.

Price ids have changed across pricing revisions, so the checkout amount is
used as a fallback signal. Both the price ids and the amount thresholds
come from BillingConfig.
"""

from typing import Optional

from .billing_config import BillingConfig
from .constants import LONG_CYCLE, MODE_PAYMENT, PERPETUAL, SHORT_CYCLE


def classify_purchase(
    mode: Optional[str],
    amount_total: Optional[int],
    price_id: Optional[str],
    config: BillingConfig,
) -> str:
    """
    Classify a checkout into perpetual, short_cycle or long_cycle.

    First match wins:
      1. one-time payment mode, or amount at/above the perpetual threshold
      2. a known long-cycle price id, or amount at/above the long-cycle threshold
      3. short_cycle
    """
    amount = int(amount_total or 0)

    if mode == MODE_PAYMENT or amount >= config.perpetual_amount_threshold:
        return PERPETUAL

    if (price_id and price_id in config.long_cycle_price_ids) or amount >= config.long_cycle_amount_threshold:
        return LONG_CYCLE

    return SHORT_CYCLE
