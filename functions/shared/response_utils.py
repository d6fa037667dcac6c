"""
Response helpers for API Gateway proxy handlers.

Every JSON body goes through decimal_default so DynamoDB numbers serialize,
and CORS headers are only added for the site's own origins.
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

_PROD_ORIGINS = [
    "https://dayoftimeline.app",
    "https://www.dayoftimeline.app",
]
_DEV_ORIGINS = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
]
ALLOWED_ORIGINS: List[str] = (
    _PROD_ORIGINS + _DEV_ORIGINS
    if os.environ.get("ALLOW_DEV_CORS") == "true"
    else _PROD_ORIGINS
)


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for an allowed origin, empty dict otherwise."""
    if not origin or origin not in ALLOWED_ORIGINS:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Admin-Token",
        "Access-Control-Allow-Credentials": "true",
    }


def get_origin(event: dict) -> Optional[str]:
    headers = event.get("headers") or {}
    return headers.get("origin") or headers.get("Origin")


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _json_response(
    status_code: int,
    body: Any,
    headers: Optional[Dict[str, str]],
    origin: Optional[str],
) -> dict:
    response_headers = {"Content-Type": "application/json", **get_cors_headers(origin)}
    response_headers.update(headers or {})
    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Create an error response with body ``{"error": {"code", "message"}}``.

    Args:
        status_code: HTTP status code
        code: Machine-readable error code (snake_case)
        message: Human-readable error message
        headers: Additional response headers
        details: Optional additional error details
        origin: Request Origin header for CORS
    """
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return _json_response(status_code, {"error": error}, headers, origin)


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    return _json_response(status_code, data, headers, origin)


def preflight_response(origin: Optional[str] = None) -> dict:
    """Empty 204 answer to a CORS preflight request."""
    return {
        "statusCode": 204,
        "headers": get_cors_headers(origin),
        "body": "",
    }
