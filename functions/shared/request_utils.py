"""Shared request utilities for API handlers."""

import base64
import json
import logging
from typing import Optional

from .errors import InvalidRequestError

logger = logging.getLogger(__name__)


def get_http_method(event: dict) -> str:
    """HTTP method for REST (v1) and HTTP API (v2) proxy events."""
    method = event.get("httpMethod")
    if not method:
        method = ((event.get("requestContext") or {}).get("http") or {}).get("method", "")
    return (method or "").upper()


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def get_raw_body(event: dict) -> str:
    """Request body exactly as sent, undoing API Gateway's base64 encoding."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body).decode("utf-8")
    return body


def parse_json_body(event: dict) -> dict:
    """Parse an optional JSON object body.

    Raises:
        InvalidRequestError: body is not a JSON object
    """
    raw = get_raw_body(event)
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidRequestError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def is_scheduled_event(event: dict) -> bool:
    """True for EventBridge scheduled invocations."""
    return event.get("source") == "aws.events" or event.get("detail-type") == "Scheduled Event"
