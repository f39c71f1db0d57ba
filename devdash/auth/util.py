from __future__ import annotations

import base64
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_json(payload: Dict[str, Any]) -> str:
    return b64url(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))


def random_token(nbytes: int = 32) -> str:
    return b64url(os.urandom(nbytes))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mask_secret(value: str | None) -> str:
    """Loggable form of a token: only the last four characters."""
    v = (value or "").strip()
    if len(v) <= 4:
        return "****"
    return f"****{v[-4:]}"


def sanitize_next_path(next_path: str | None) -> str:
    """
    Prevent open-redirects: allow only relative paths like `/dashboard`.
    """
    p = (next_path or "").strip()
    if not p:
        return "/"
    if not p.startswith("/"):
        return "/"
    # Disallow scheme-relative: `//evil.com`
    if p.startswith("//"):
        return "/"
    p = p.replace("\r", "").replace("\n", "")
    return p or "/"
