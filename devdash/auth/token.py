"""
Bearer token codec.

Tokens use the three-segment JWT shape (header.claims.signature, base64url). Locally
issued tokens are unsigned (`alg: none` plus a placeholder signature segment); tokens
from the backend carry a real signature that is never verified here, the backend is
the signature authority.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import jwt  # PyJWT

from devdash.auth.models import User
from devdash.auth.util import b64url, b64url_json

LOCAL_ISSUER = "devdash-local"
LOCAL_AUDIENCE = "devdash"
PLACEHOLDER_SIGNATURE = b64url(b"unsigned")


def issue(user: User, ttl_seconds: int, *, now: Optional[float] = None, issuer: str = LOCAL_ISSUER) -> str:
    iat = int(time.time() if now is None else now)
    header = {"alg": "none", "typ": "JWT"}
    claims = {
        "sub": user.id,
        "email": user.email,
        "name": user.display_name,
        "role": user.role,
        "iss": issuer,
        "aud": LOCAL_AUDIENCE,
        "iat": iat,
        "exp": iat + int(ttl_seconds),
    }
    return f"{b64url_json(header)}.{b64url_json(claims)}.{PLACEHOLDER_SIGNATURE}"


def decode_claims(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Claims segment of a token, or None when it cannot be parsed. No signature check."""
    if not token or not isinstance(token, str):
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    if not isinstance(claims, dict):
        return None
    return claims


def decode_expiry(token: Optional[str]) -> Optional[int]:
    """`exp` claim in epoch seconds; None means unknown."""
    claims = decode_claims(token)
    if claims is None:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or exp is None:
        return None
    try:
        return int(float(exp))
    except (TypeError, ValueError):
        return None


def is_expired(token: Optional[str], *, now: Optional[float] = None, fail_closed: bool = True) -> bool:
    """
    Expiry check with an explicit policy for undecodable tokens.

    fail_closed=True treats an unknown expiry as expired; fail_closed=False keeps
    such a token valid.
    """
    exp = decode_expiry(token)
    if exp is None:
        return fail_closed
    current = time.time() if now is None else now
    return current >= exp
