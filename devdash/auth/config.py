from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from devdash.auth.errors import ConfigurationError

PRIMARY_SCHEMES = ("enterprise", "credentials")
IDENTITY_MODES = ("backend", "simulated", "fallback")
EXPIRY_POLICIES = ("fail_closed", "fail_open")
GITHUB_PROBE_MODES = ("direct", "backend")
SOCIAL_PROVIDERS = ("google", "github")


@dataclass(frozen=True)
class AuthConfig:
    # Which primary sign-in scheme is active
    primary_scheme: str  # enterprise|credentials
    identity_mode: str  # backend|simulated|fallback

    # Backend collaborator + redirect URIs
    api_base_url: str
    public_base_url: str
    http_timeout_seconds: float

    # Session configuration
    session_ttl_seconds: int
    redirect_ttl_seconds: int
    state_secret: Optional[str]  # Redirect state signing (random per process when unset)
    state_dir: str  # Durable tier location
    token_expiry_policy: str  # fail_closed|fail_open

    # Email/password + social sign-in
    social_providers: List[str]
    credentials_file: Optional[str]
    demo_accounts: bool
    login_max_attempts: int
    login_window_seconds: int

    # Redirect providers
    entra_client_id: Optional[str]
    entra_tenant_id: str
    google_client_id: Optional[str]
    github_client_id: Optional[str]

    # GitHub link (secondary account)
    github_pat_enabled: bool
    github_oauth_enabled: bool
    github_api_url: str
    github_probe: str  # direct|backend

    @property
    def credentials_enabled(self) -> bool:
        """Email/password sign-in is only offered by the credentials scheme."""
        return self.primary_scheme == "credentials"

    @property
    def enterprise_enabled(self) -> bool:
        return self.primary_scheme == "enterprise"

    @property
    def simulated(self) -> bool:
        return self.identity_mode == "simulated"

    @property
    def fail_closed(self) -> bool:
        return self.token_expiry_policy == "fail_closed"

    def redirect_providers(self) -> List[str]:
        """Primary sign-in providers reachable by redirect under the active scheme."""
        if self.enterprise_enabled:
            return ["enterprise"]
        return list(self.social_providers)

    def client_id_for(self, provider: str) -> Optional[str]:
        if provider == "enterprise":
            return self.entra_client_id
        if provider == "google":
            return self.google_client_id
        if provider in ("github", "github_link"):
            return self.github_client_id
        return None

    def redirect_uri_for(self, provider: str) -> str:
        if provider == "github_link":
            return f"{self.public_base_url}/api/github/callback"
        return f"{self.public_base_url}/api/auth/callback/{provider}"

    def validate(self) -> "AuthConfig":
        """
        Check every option once at startup.

        Raises:
            ConfigurationError: on unknown option values or missing provider credentials.
        """
        _require_choice("DEVDASH_PRIMARY_SCHEME", self.primary_scheme, PRIMARY_SCHEMES)
        _require_choice("DEVDASH_IDENTITY_MODE", self.identity_mode, IDENTITY_MODES)
        _require_choice("DEVDASH_TOKEN_EXPIRY_POLICY", self.token_expiry_policy, EXPIRY_POLICIES)
        _require_choice("DEVDASH_GITHUB_PROBE", self.github_probe, GITHUB_PROBE_MODES)
        for p in self.social_providers:
            _require_choice("DEVDASH_SOCIAL_PROVIDERS", p, SOCIAL_PROVIDERS)

        for name, url in (
            ("DEVDASH_API_BASE_URL", self.api_base_url),
            ("DEVDASH_PUBLIC_BASE_URL", self.public_base_url),
            ("GITHUB_API_URL", self.github_api_url),
        ):
            if not (url.startswith("http://") or url.startswith("https://")):
                raise ConfigurationError(f"{name} must be an http(s) URL")

        if self.credentials_enabled and not (self.credentials_file or self.demo_accounts):
            raise ConfigurationError("Credential sign-in needs DEVDASH_CREDENTIALS_FILE or DEVDASH_DEMO_ACCOUNTS")

        # A real exchange needs a registered client for every redirect provider.
        if not self.simulated:
            for provider in self.redirect_providers():
                if not self.client_id_for(provider):
                    raise ConfigurationError(f"Provider '{provider}' has no client id configured")
            if self.github_oauth_enabled and not self.github_client_id:
                raise ConfigurationError("GITHUB_OAUTH_ENABLED requires GITHUB_CLIENT_ID")
        return self


def _require_choice(name: str, value: str, choices: tuple) -> None:
    if value not in choices:
        raise ConfigurationError(f"{name}={value!r} is not one of {', '.join(choices)}")


def _parse_csv(value: str) -> List[str]:
    items = [x.strip().lower() for x in (value or "").split(",")]
    return [x for x in items if x]


def _parse_bool(value: Optional[str], default: bool) -> bool:
    v = (value or "").strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env(name: str) -> Optional[str]:
    return (os.getenv(name, "") or "").strip() or None


def _env_int(name: str, default: str) -> int:
    raw = _env(name) or default
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        raise ConfigurationError(f"{name}={raw!r} is not a number") from None


def _env_float(name: str, default: str) -> float:
    raw = _env(name) or default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name}={raw!r} is not a number") from None


def default_state_dir() -> str:
    """Durable tier location: $XDG_CONFIG_HOME/devdash, or ~/.config/devdash."""
    xdg_config = _env("XDG_CONFIG_HOME")
    if xdg_config:
        return str(Path(xdg_config) / "devdash")
    return str(Path.home() / ".config" / "devdash")


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables and validate it.

    Defaults give a self-contained demo: enterprise sign-in through the simulated
    identity provider, GitHub linking by personal access token.
    """
    ttl_minutes = _env_int("DEVDASH_SESSION_TIMEOUT_MINUTES", "60")  # 1h default
    if ttl_minutes < 1:
        ttl_minutes = 1

    redirect_ttl = _env_int("DEVDASH_REDIRECT_TTL_SECONDS", "600")
    if redirect_ttl <= 30:
        redirect_ttl = 30

    cfg = AuthConfig(
        primary_scheme=(_env("DEVDASH_PRIMARY_SCHEME") or "enterprise").lower(),
        identity_mode=(_env("DEVDASH_IDENTITY_MODE") or "simulated").lower(),
        api_base_url=(_env("DEVDASH_API_BASE_URL") or "http://localhost:5000/api").rstrip("/"),
        public_base_url=(_env("DEVDASH_PUBLIC_BASE_URL") or "http://localhost:8080").rstrip("/"),
        http_timeout_seconds=_env_float("DEVDASH_HTTP_TIMEOUT_SECONDS", "10"),
        session_ttl_seconds=ttl_minutes * 60,
        redirect_ttl_seconds=redirect_ttl,
        state_secret=_env("DEVDASH_STATE_SECRET"),
        state_dir=_env("DEVDASH_STATE_DIR") or default_state_dir(),
        token_expiry_policy=(_env("DEVDASH_TOKEN_EXPIRY_POLICY") or "fail_closed").lower(),
        social_providers=_parse_csv(os.getenv("DEVDASH_SOCIAL_PROVIDERS", "google,github")),
        credentials_file=_env("DEVDASH_CREDENTIALS_FILE"),
        demo_accounts=_parse_bool(os.getenv("DEVDASH_DEMO_ACCOUNTS"), True),
        login_max_attempts=_env_int("DEVDASH_LOGIN_MAX_ATTEMPTS", "5"),
        login_window_seconds=_env_int("DEVDASH_LOGIN_WINDOW_SECONDS", "300"),
        entra_client_id=_env("ENTRA_CLIENT_ID"),
        entra_tenant_id=_env("ENTRA_TENANT_ID") or "common",
        google_client_id=_env("GOOGLE_CLIENT_ID"),
        github_client_id=_env("GITHUB_CLIENT_ID"),
        github_pat_enabled=_parse_bool(os.getenv("GITHUB_PAT_ENABLED"), True),
        github_oauth_enabled=_parse_bool(os.getenv("GITHUB_OAUTH_ENABLED"), False),
        github_api_url=(_env("GITHUB_API_URL") or "https://api.github.com").rstrip("/"),
        github_probe=(_env("DEVDASH_GITHUB_PROBE") or "direct").lower(),
    )
    return cfg.validate()
