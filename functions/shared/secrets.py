"""Secrets Manager access with a short-lived in-process cache."""

import json
import logging
import time

from botocore.exceptions import ClientError

from .aws_clients import get_secretsmanager

logger = logging.getLogger(__name__)

SECRETS_CACHE_TTL = 300  # 5 minutes

# arn -> (value, fetched_at)
_secret_cache: dict[str, tuple[str, float]] = {}


def get_secret(secret_arn: str | None, json_key: str) -> str | None:
    """Read a secret, accepting both JSON ({json_key: value}) and plain strings.

    Returns None when the ARN is not configured or cannot be read.
    """
    if not secret_arn:
        return None

    cached = _secret_cache.get(secret_arn)
    if cached and (time.time() - cached[1]) < SECRETS_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_key}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        secret_json = None

    if isinstance(secret_json, dict):
        value = secret_json.get(json_key) or secret_value
    else:
        value = secret_value

    _secret_cache[secret_arn] = (value, time.time())
    return value


def clear_secret_cache() -> None:
    """Drop cached secrets. Used in tests."""
    _secret_cache.clear()
