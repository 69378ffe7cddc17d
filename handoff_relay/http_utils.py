"""http_utils.py — API Gateway response envelope, body parsing, route extraction."""
from __future__ import annotations

import base64
import json
import os
from typing import Any, Dict, Tuple

from handoff_relay.errors import HandoffError
from handoff_relay.serialization import _json_default

__all__ = [
    "CORS_ORIGIN",
    "_error",
    "_from_handoff_error",
    "_json_body",
    "_path_method",
    "_response",
]

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": CORS_ORIGIN,
        "Access-Control-Allow-Headers": "Content-Type,Authorization,Cookie,X-Handoff-Internal-Key",
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    }


def _response(status_code: int, payload: Any) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": json.dumps(payload, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        code = {
            400: "INVALID_INPUT",
            401: "PERMISSION_DENIED",
            403: "PERMISSION_DENIED",
            404: "NOT_FOUND",
            409: "CONFLICT",
            429: "RATE_LIMITED",
        }.get(status_code, "INTERNAL_ERROR")
    retryable = bool(extra.pop("retryable", status_code >= 500))
    details = dict(extra)
    body: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    return _response(status_code, body)


def _from_handoff_error(exc: HandoffError) -> Dict[str, Any]:
    return _error(exc.status_code, exc.message, code=exc.code, retryable=exc.retryable, **exc.details)


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the request body as a JSON object. Raises ValueError otherwise."""
    raw = event.get("body")
    if raw in (None, ""):
        return {}
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("JSON body must be an object")
    return parsed


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path
