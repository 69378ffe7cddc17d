"""auth.py — Principal extraction for HTTP and WebSocket requests.

Resolution order:
    1. Claims already verified by an API Gateway JWT/Lambda authorizer
       (``requestContext.authorizer``).
    2. ``X-Handoff-Internal-Key`` header for trusted service callers.
    3. A Cognito ID token from ``Authorization: Bearer`` or the
       ``handoff_id_token`` cookie, verified (RS256) against the user pool JWKS.

Returns ``(principal, None)`` or ``(None, error_response)``. The principal is
``{"sub": ..., "role": "advisor" | "user" | "service", "claims": {...}}``.
"""
from __future__ import annotations

import json
import logging
import ssl
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

import certifi
import jwt
from jwt.algorithms import RSAAlgorithm

from handoff_relay.config import ADVISOR_GROUP, COGNITO_CLIENT_ID, COGNITO_USER_POOL_ID, HANDOFF_INTERNAL_API_KEY
from handoff_relay.http_utils import _error

logger = logging.getLogger("handoff_relay")

__all__ = ["_authenticate", "_principal_from_claims", "_verify_token"]

_TOKEN_COOKIE = "handoff_id_token"
_jwks_cache: Dict[str, Any] = {}
_jwks_fetched_at: float = 0.0
_JWKS_TTL: float = 3600.0


def _header(event: Dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return str(lowered.get(name.lower()) or "")


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    auth = _header(event, "authorization")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None

    cookie_parts: List[str] = [p.strip() for p in _header(event, "cookie").split(";") if p.strip()]
    event_cookies = event.get("cookies") or []
    if isinstance(event_cookies, list):
        cookie_parts.extend(p.strip() for p in event_cookies if isinstance(p, str) and p.strip())
    for part in cookie_parts:
        if part.startswith(f"{_TOKEN_COOKIE}="):
            return part[len(_TOKEN_COOKIE) + 1:]

    query = event.get("queryStringParameters") or {}
    token = query.get("token")
    return str(token) if token else None


def _get_jwks() -> Dict[str, Any]:
    """Fetch (and cache) the Cognito user pool JWKS."""
    global _jwks_cache, _jwks_fetched_at
    now = time.time()
    if _jwks_cache and (now - _jwks_fetched_at) < _JWKS_TTL:
        return _jwks_cache
    if not COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")

    region = COGNITO_USER_POOL_ID.split("_")[0]
    url = f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}/.well-known/jwks.json"
    context = ssl.create_default_context(cafile=certifi.where())
    with urllib.request.urlopen(url, timeout=5, context=context) as resp:
        data = json.loads(resp.read())

    _jwks_cache = {k["kid"]: RSAAlgorithm.from_jwk(json.dumps(k)) for k in data.get("keys", [])}
    _jwks_fetched_at = now
    return _jwks_cache


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify a Cognito JWT (RS256). Returns decoded claims; raises ValueError."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Invalid token header: {exc}") from exc
    if header.get("alg", "RS256") != "RS256":
        raise ValueError(f"Unexpected token algorithm: {header.get('alg')}")

    try:
        jwks = _get_jwks()
    except (urllib.error.URLError, OSError, KeyError, jwt.PyJWTError) as exc:
        logger.warning("JWKS fetch failed: %s", exc)
        raise ValueError(f"Unable to load token signing keys: {exc}") from exc
    key = jwks.get(header.get("kid"))
    if key is None:
        raise ValueError("Token key ID not found in JWKS")
    try:
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=COGNITO_CLIENT_ID or None,
            options={"verify_exp": True, "verify_aud": bool(COGNITO_CLIENT_ID)},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired. Please sign in again.")
    except jwt.InvalidAudienceError:
        raise ValueError("Token audience mismatch.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc


def _principal_from_claims(claims: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    sub = claims.get("sub") or claims.get("principalId") or claims.get("userId")
    if not sub:
        return None
    groups = claims.get("cognito:groups") or []
    if isinstance(groups, str):
        groups = [g.strip(" []") for g in groups.replace(",", " ").split() if g.strip(" []")]
    role = claims.get("role") or ("advisor" if ADVISOR_GROUP in groups else "user")
    return {"sub": str(sub), "role": str(role), "claims": claims}


def _authenticate(event: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = (authorizer.get("jwt") or {}).get("claims") or authorizer.get("claims") or authorizer
    if isinstance(claims, dict) and claims:
        principal = _principal_from_claims(claims)
        if principal:
            return principal, None

    if HANDOFF_INTERNAL_API_KEY:
        internal_key = _header(event, "x-handoff-internal-key")
        if internal_key and internal_key == HANDOFF_INTERNAL_API_KEY:
            return {"sub": "internal", "role": "service", "claims": {"auth_mode": "internal-key"}}, None

    token = _extract_token(event)
    if not token:
        return None, _error(401, "Authentication required. Please sign in.")
    try:
        verified = _verify_token(token)
    except ValueError as exc:
        return None, _error(401, str(exc))
    principal = _principal_from_claims(verified)
    if principal is None:
        return None, _error(401, "Token has no subject")
    return principal, None
