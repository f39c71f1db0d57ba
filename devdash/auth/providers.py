from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlencode

from devdash.auth.config import AuthConfig
from devdash.auth.errors import ConfigurationError


@dataclass(frozen=True)
class RedirectProvider:
    """An external authorization endpoint reachable by browser redirect."""

    name: str
    display_name: str
    authorize_endpoint: str
    client_id: Optional[str]
    scopes: List[str]
    logo: str = ""


def get_provider(cfg: AuthConfig, name: str) -> RedirectProvider:
    """
    Resolve a provider by name.

    `enterprise` is Microsoft Entra ID; `google` and `github` are social sign-in;
    `github_link` is the secondary GitHub account OAuth flow.
    """
    if name == "enterprise":
        return RedirectProvider(
            name=name,
            display_name="Microsoft",
            authorize_endpoint=f"https://login.microsoftonline.com/{cfg.entra_tenant_id}/oauth2/v2.0/authorize",
            client_id=cfg.entra_client_id,
            scopes=["openid", "profile", "email", "User.Read"],
            logo="https://www.microsoft.com/favicon.ico",
        )
    if name == "google":
        return RedirectProvider(
            name=name,
            display_name="Google",
            authorize_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            client_id=cfg.google_client_id,
            scopes=["openid", "email", "profile"],
            logo="https://www.google.com/favicon.ico",
        )
    if name == "github":
        return RedirectProvider(
            name=name,
            display_name="GitHub",
            authorize_endpoint="https://github.com/login/oauth/authorize",
            client_id=cfg.github_client_id,
            scopes=["read:user", "user:email"],
            logo="https://github.com/favicon.ico",
        )
    if name == "github_link":
        return RedirectProvider(
            name=name,
            display_name="GitHub",
            authorize_endpoint="https://github.com/login/oauth/authorize",
            client_id=cfg.github_client_id,
            scopes=["repo", "read:user"],
            logo="https://github.com/favicon.ico",
        )
    raise ConfigurationError(f"Unknown sign-in provider: {name}")


def provider_metadata(cfg: AuthConfig) -> List[Dict[str, str]]:
    """Display metadata (name, logo) for the redirect providers of the active scheme."""
    out = []
    for name in cfg.redirect_providers():
        p = get_provider(cfg, name)
        out.append({"id": p.name, "name": p.display_name, "logo": p.logo})
    return out


def build_authorize_url(
    provider: RedirectProvider,
    *,
    redirect_uri: str,
    state: str,
    nonce: str,
) -> str:
    """
    Build the authorization URL for a redirect provider.

    The CSRF token travels as `state`; `nonce` is echoed back in the ID token.
    """
    params = {
        "client_id": provider.client_id or "",
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": " ".join(provider.scopes),
        "response_mode": "query",
        "state": state,
        "nonce": nonce,
    }
    return f"{provider.authorize_endpoint}?{urlencode(params)}"
