from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class StorageTier(str, Enum):
    DURABLE = "durable"  # survives restarts
    EPHEMERAL = "ephemeral"  # scoped to this process


class MethodKind(str, Enum):
    EMAIL_PASSWORD = "email"
    SOCIAL_OAUTH = "oauth"
    ENTERPRISE_REDIRECT = "entra"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class ConnectionMethod(str, Enum):
    TOKEN = "token"
    OAUTH = "oauth"


@dataclass(frozen=True)
class AuthMethod:
    """How the active session was established."""

    kind: MethodKind
    provider: Optional[str] = None  # social provider name for SOCIAL_OAUTH

    @classmethod
    def email_password(cls) -> "AuthMethod":
        return cls(MethodKind.EMAIL_PASSWORD)

    @classmethod
    def enterprise(cls) -> "AuthMethod":
        return cls(MethodKind.ENTERPRISE_REDIRECT)

    @classmethod
    def social(cls, provider: str) -> "AuthMethod":
        return cls(MethodKind.SOCIAL_OAUTH, provider)

    @classmethod
    def for_provider(cls, provider: str) -> "AuthMethod":
        if provider == "enterprise":
            return cls.enterprise()
        return cls.social(provider)

    @property
    def tag(self) -> str:
        """Storage tag: `email`, `entra` or `oauth_<provider>`."""
        if self.kind == MethodKind.SOCIAL_OAUTH:
            return f"oauth_{self.provider}"
        return self.kind.value

    @classmethod
    def from_tag(cls, tag: str) -> "AuthMethod":
        t = (tag or "").strip()
        if t.startswith("oauth_") and len(t) > len("oauth_"):
            return cls.social(t[len("oauth_") :])
        if t == MethodKind.ENTERPRISE_REDIRECT.value:
            return cls.enterprise()
        if t == MethodKind.EMAIL_PASSWORD.value:
            return cls.email_password()
        raise ValueError(f"Unknown auth method tag: {tag!r}")

    @property
    def is_redirect(self) -> bool:
        return self.kind != MethodKind.EMAIL_PASSWORD


@dataclass(frozen=True)
class User:
    """Signed-in user. Identity fields belong to the primary sign-in; `github_*` fields are link annotations."""

    id: str
    email: str
    display_name: str
    role: str = "developer"
    avatar_url: Optional[str] = None
    provider: Optional[str] = None
    tenant_id: Optional[str] = None  # enterprise identity only
    github_username: Optional[str] = None
    github_avatar_url: Optional[str] = None
    github_connected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        def _opt(key: str) -> Optional[str]:
            v = data.get(key)
            return str(v) if v else None

        uid = str(data.get("id") or data.get("sub") or "").strip()
        email = str(data.get("email") or "").strip()
        if not uid or not email:
            raise ValueError("User record needs id and email")
        return cls(
            id=uid,
            email=email,
            display_name=str(data.get("display_name") or data.get("displayName") or data.get("name") or email),
            role=str(data.get("role") or "developer"),
            avatar_url=_opt("avatar_url") or _opt("avatarUrl"),
            provider=_opt("provider"),
            tenant_id=_opt("tenant_id") or _opt("tenantId"),
            github_username=_opt("github_username"),
            github_avatar_url=_opt("github_avatar_url"),
            github_connected=bool(data.get("github_connected", False)),
        )


@dataclass(frozen=True)
class Session:
    token: str
    user: User
    method: AuthMethod
    expires_at: Optional[int]  # epoch seconds; None when the token cannot be decoded
    storage_tier: StorageTier
    simulated: bool = False  # issued by the local stand-in identity provider

    def is_expired(self, now: Optional[float] = None, *, fail_closed: bool = True) -> bool:
        if self.expires_at is None:
            return fail_closed
        current = time.time() if now is None else now
        return current >= self.expires_at


@dataclass(frozen=True)
class PendingRedirect:
    """Returned instead of a Session when sign-in continues at an external provider."""

    provider: str
    authorization_url: str


@dataclass(frozen=True)
class RedirectState:
    provider: str
    nonce: str
    csrf_token: str
    created_at: float


@dataclass(frozen=True)
class SecondaryLink:
    connection_method: ConnectionMethod
    external_username: str
    external_avatar_url: Optional[str]
    connected_at: str  # ISO-8601 UTC
    external_name: Optional[str] = None
    # Made against the simulated identity provider: no real GitHub account behind it.
    simulated: bool = False


@dataclass(frozen=True)
class AuthSnapshot:
    """Point-in-time view of the facade for UI consumers."""

    state: AuthState
    user: Optional[User]
    is_authenticated: bool
    loading: bool
    error: Optional[str]
    github_connected: bool
    simulated: bool = False
    github_simulated: bool = False
