from __future__ import annotations

import hmac
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from fastapi import Request

from devdash.auth.config import AuthConfig
from devdash.auth.models import Session, StorageTier

SESSION_COOKIE = "devdash_session"

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


def request_token(request: Request) -> Optional[str]:
    """Bearer from `Authorization`, else the session cookie."""
    auth = (request.headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE) or None


def authenticate_request(current: Optional[Session], request: Request) -> Optional[Session]:
    """
    Return the active session if the request carries its token.

    The server holds a single session; a caller proves it owns that session by
    presenting the same bearer token. Anything else fails closed.
    """
    if current is None:
        return None
    token = request_token(request)
    if not token:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), current.token.encode("utf-8")):
        return None
    return current


def _origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}".lower()


def origin_allowed(cfg: AuthConfig, request: Request) -> bool:
    """
    State-changing requests from a browser must come from our own origin.

    Requests without an `Origin` header (CLI tools, same-origin navigation) pass.
    """
    if request.method.upper() in SAFE_METHODS:
        return True
    origin = (request.headers.get("origin") or "").strip()
    if not origin:
        return True
    return origin.rstrip("/").lower() == _origin_of(cfg.public_base_url)


def session_cookie_kwargs(cfg: AuthConfig, session: Session) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "key": SESSION_COOKIE,
        "value": session.token,
        "httponly": True,
        "secure": cfg.public_base_url.startswith("https://"),
        "samesite": "lax",
        "path": "/",
    }
    # Remembered sessions outlive the browser; the rest end with it.
    if session.storage_tier == StorageTier.DURABLE:
        kwargs["max_age"] = cfg.session_ttl_seconds
    return kwargs
