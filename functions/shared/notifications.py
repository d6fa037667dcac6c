"""
Best-effort side effects: beta invites and operator alerts.

Neither function raises. Failures are logged and the caller carries on,
because a missed invite or alert must never fail a webhook delivery.
"""

import logging
import os
from typing import Optional

import httpx

from .aws_clients import get_sns
from .logging_utils import mask_email

logger = logging.getLogger(__name__)

INVITE_TIMEOUT_SECONDS = 5.0


def send_beta_invite(email: Optional[str]) -> bool:
    """POST the purchaser's email to the beta-invite service.

    Returns True when the service accepted the request.
    """
    invite_url = os.environ.get("BETA_INVITE_URL")
    if not invite_url:
        logger.debug("BETA_INVITE_URL not configured, skipping beta invite")
        return False
    if not email:
        logger.info("No email available, skipping beta invite")
        return False

    headers = {"Content-Type": "application/json"}
    token = os.environ.get("BETA_INVITE_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = httpx.post(
            invite_url,
            json={"email": email},
            headers=headers,
            timeout=INVITE_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except Exception as e:
        logger.error(f"Beta invite failed for {mask_email(email)}: {e}")
        return False

    logger.info(f"Beta invite sent to {mask_email(email)}")
    return True


def send_operator_alert(subject: str, message: str) -> bool:
    """Publish an alert to ALERT_TOPIC_ARN, if configured."""
    alert_topic_arn = os.environ.get("ALERT_TOPIC_ARN")
    if not alert_topic_arn:
        logger.debug("ALERT_TOPIC_ARN not configured, skipping operator alert")
        return False

    try:
        get_sns().publish(
            TopicArn=alert_topic_arn,
            Subject=f"Day of Timeline: {subject}"[:100],
            Message=message,
        )
    except Exception as e:
        logger.error(f"Failed to send operator alert: {e}")
        return False

    logger.info(f"Operator alert sent: {subject}")
    return True
