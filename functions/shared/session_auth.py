"""
Caller authentication for the sync trigger and checkout endpoints.

Session tokens are ``<base64 json>.<hex hmac-sha256>`` signed with the
secret in SESSION_SECRET_ARN; the JSON carries ``user_id``, ``email`` and
``exp``. The token is read from ``Authorization: Bearer`` or the
``session`` cookie.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
from datetime import datetime, timezone
from http.cookies import SimpleCookie
from typing import Optional

from .request_utils import get_header
from .secrets import get_secret

logger = logging.getLogger(__name__)


def _get_session_secret() -> Optional[str]:
    return get_secret(os.environ.get("SESSION_SECRET_ARN"), "secret")


def _get_admin_token() -> Optional[str]:
    return get_secret(os.environ.get("ADMIN_TOKEN_SECRET_ARN"), "token")


def extract_session_token(event: dict) -> Optional[str]:
    """Bearer token first, then the ``session`` cookie."""
    authorization = get_header(event, "Authorization") or ""
    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            return token

    cookie_header = get_header(event, "Cookie")
    if cookie_header:
        cookies = SimpleCookie()
        cookies.load(cookie_header)
        if "session" in cookies:
            return cookies["session"].value
    return None


def verify_session_token(token: Optional[str]) -> Optional[dict]:
    """Verify a session token and return its data if valid and unexpired."""
    session_secret = _get_session_secret()
    if not session_secret or not token or "." not in token:
        return None

    payload, signature = token.rsplit(".", 1)
    expected_sig = hmac.new(
        session_secret.encode(),
        payload.encode(),
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(signature, expected_sig):
        return None

    try:
        data = json.loads(base64.urlsafe_b64decode(payload.encode()))
    except (ValueError, TypeError):
        return None

    if not isinstance(data, dict):
        return None

    if data.get("exp", 0) < datetime.now(timezone.utc).timestamp():
        return None

    return data


def get_session(event: dict) -> Optional[dict]:
    """Session data for the request, or None when unauthenticated."""
    return verify_session_token(extract_session_token(event))


def is_admin_request(event: dict) -> bool:
    """True when X-Admin-Token matches the configured admin secret."""
    expected = _get_admin_token()
    provided = get_header(event, "X-Admin-Token")
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided, expected)
