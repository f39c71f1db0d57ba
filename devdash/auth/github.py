"""
Secondary GitHub account link.

A link is independent of the primary session: it survives logout and is always kept
in the durable tier. When a primary session exists, its User is annotated with the
linked account's `github_*` fields.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Optional, Union
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from pydantic import ValidationError as SchemaError

from devdash.auth import events as ev
from devdash.auth.backend import BackendClient, GitHubUserInfo
from devdash.auth.config import AuthConfig
from devdash.auth.errors import ConfigurationError, NetworkError, ValidationError
from devdash.auth.events import AuthEvents
from devdash.auth.models import ConnectionMethod, SecondaryLink, User
from devdash.auth.providers import get_provider
from devdash.auth.redirect import RedirectGuard
from devdash.auth.session import SessionStore
from devdash.auth.storage import KeyValueStorage
from devdash.auth.util import mask_secret, utc_now_iso

logger = logging.getLogger(__name__)

LINK_PROVIDER = "github_link"

LINK_TOKEN_KEY = "secondary.link.token"
LINK_CONNECTED_KEY = "secondary.link.connected"
LINK_METHOD_KEY = "secondary.link.method"
LINK_USERNAME_KEY = "secondary.link.username"
LINK_AVATAR_KEY = "secondary.link.avatar"
LINK_NAME_KEY = "secondary.link.name"
LINK_CONNECTED_AT_KEY = "secondary.link.connectedAt"
LINK_SIMULATED_KEY = "secondary.link.simulated"

LINK_KEYS = (
    LINK_TOKEN_KEY,
    LINK_CONNECTED_KEY,
    LINK_METHOD_KEY,
    LINK_USERNAME_KEY,
    LINK_AVATAR_KEY,
    LINK_NAME_KEY,
    LINK_CONNECTED_AT_KEY,
    LINK_SIMULATED_KEY,
)

# Account reported for OAuth links made against the simulated identity provider.
SIMULATED_GITHUB_USER = GitHubUserInfo(
    login="devdash-demo",
    avatar_url="https://avatars.githubusercontent.com/u/0?v=4",
    name="DevDash Demo",
)


class GitHubClient:
    """Minimal GitHub REST client used to probe a personal access token."""

    def __init__(self, api_url: str, *, timeout: float = 10.0) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def get_user(self, token: str) -> GitHubUserInfo:
        """
        Fetch the account a token belongs to.

        Raises:
            ValidationError: GitHub rejected the token
            NetworkError: GitHub unreachable
        """
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        try:
            r = requests.get(f"{self.api_url}/user", headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("GitHub probe failed (%s)", type(e).__name__)
            raise NetworkError(f"GitHub unreachable: {type(e).__name__}") from e
        if r.status_code != 200:
            logger.info("GitHub rejected token %s (status=%d)", mask_secret(token), r.status_code)
            raise ValidationError("Invalid token")
        try:
            return GitHubUserInfo.model_validate(r.json())
        except (SchemaError, ValueError) as e:
            raise ValidationError("Invalid token") from e


class SecondaryLinkManager:
    def __init__(
        self,
        cfg: AuthConfig,
        storage: KeyValueStorage,
        store: SessionStore,
        guard: RedirectGuard,
        *,
        github: GitHubClient,
        backend: BackendClient,
        events: Optional[AuthEvents] = None,
    ) -> None:
        self.cfg = cfg
        self.storage = storage
        self.store = store
        self.guard = guard
        self.github = github
        self.backend = backend
        self.events = events or AuthEvents()

    # ---- reads ----

    def is_connected(self) -> bool:
        return self.storage.get(LINK_CONNECTED_KEY) == "true" and bool(self.storage.get(LINK_USERNAME_KEY))

    def get_link(self) -> Optional[SecondaryLink]:
        if not self.is_connected():
            return None
        try:
            method = ConnectionMethod(self.storage.get(LINK_METHOD_KEY) or ConnectionMethod.TOKEN.value)
        except ValueError:
            logger.warning("Stored GitHub link has unknown method; treating as token")
            method = ConnectionMethod.TOKEN
        return SecondaryLink(
            connection_method=method,
            external_username=self.storage.get(LINK_USERNAME_KEY) or "",
            external_avatar_url=self.storage.get(LINK_AVATAR_KEY),
            connected_at=self.storage.get(LINK_CONNECTED_AT_KEY) or "",
            external_name=self.storage.get(LINK_NAME_KEY),
            simulated=self.storage.get(LINK_SIMULATED_KEY) == "true",
        )

    def get_token(self) -> Optional[str]:
        """Raw GitHub token, when one is held client-side (direct probe or OAuth)."""
        if not self.is_connected():
            return None
        return self.storage.get(LINK_TOKEN_KEY)

    def annotate(self, user: User) -> User:
        """Overlay the current link on a User."""
        link = self.get_link()
        if link is None:
            return replace(user, github_username=None, github_avatar_url=None, github_connected=False)
        return replace(
            user,
            github_username=link.external_username,
            github_avatar_url=link.external_avatar_url,
            github_connected=True,
        )

    # ---- writes ----

    def _bearer(self) -> Optional[str]:
        session = self.store.read()
        return session.token if session else None

    def _save(self, link: SecondaryLink, token: Optional[str]) -> None:
        for key in LINK_KEYS:
            self.storage.remove(key)
        if token:
            self.storage.set(LINK_TOKEN_KEY, token)
        self.storage.set(LINK_METHOD_KEY, link.connection_method.value)
        self.storage.set(LINK_USERNAME_KEY, link.external_username)
        if link.external_avatar_url:
            self.storage.set(LINK_AVATAR_KEY, link.external_avatar_url)
        if link.external_name:
            self.storage.set(LINK_NAME_KEY, link.external_name)
        self.storage.set(LINK_CONNECTED_AT_KEY, link.connected_at)
        if link.simulated:
            self.storage.set(LINK_SIMULATED_KEY, "true")
        # Written last: a partially written link never reads as connected.
        self.storage.set(LINK_CONNECTED_KEY, "true")

    def _sync_annotation(self) -> None:
        session = self.store.read()
        if session is not None:
            self.store.update_user(self.annotate(session.user))

    async def _probe_token(self, token: str) -> tuple:
        if self.cfg.github_probe == "backend":
            resp = await asyncio.to_thread(self.backend.connect_github, token, bearer=self._bearer())
            info = GitHubUserInfo(login=resp.github_username, avatar_url=resp.avatar_url)
            # The backend keeps the token; nothing raw is stored here.
            return info, None
        info = await asyncio.to_thread(self.github.get_user, token)
        return info, token

    async def _exchange_code(self, code: str, state: Optional[str]) -> tuple:
        self.guard.complete_redirect(LINK_PROVIDER, state)
        code = (code or "").strip()
        if not code:
            raise ValidationError("Missing authorization code")
        if self.cfg.simulated:
            return SIMULATED_GITHUB_USER, None
        resp = await asyncio.to_thread(
            self.backend.exchange_github_code,
            code,
            self.cfg.redirect_uri_for(LINK_PROVIDER),
            bearer=self._bearer(),
        )
        return resp.github_user, resp.access_token

    async def connect(
        self,
        credential_or_code: str,
        method: Union[ConnectionMethod, str],
        state: Optional[str] = None,
    ) -> SecondaryLink:
        """
        Link a GitHub account by personal access token or OAuth authorization code.

        Raises:
            ConfigurationError: the connection method is disabled
            ValidationError: empty or rejected credential
            SecurityError: OAuth state did not validate
            NetworkError: GitHub or the backend unreachable
        """
        try:
            method = ConnectionMethod(method)
        except ValueError as e:
            raise ValidationError(f"Unknown connection method: {method}") from e

        if method == ConnectionMethod.TOKEN:
            if not self.cfg.github_pat_enabled:
                raise ConfigurationError("Personal access token linking is not enabled")
            token = (credential_or_code or "").strip()
            if not token:
                raise ValidationError("GitHub token is required")
            info, stored_token = await self._probe_token(token)
        else:
            if not self.cfg.github_oauth_enabled:
                raise ConfigurationError("GitHub OAuth linking is not enabled")
            info, stored_token = await self._exchange_code(credential_or_code, state)

        link = SecondaryLink(
            connection_method=method,
            external_username=info.login,
            external_avatar_url=info.avatar_url,
            connected_at=utc_now_iso(),
            external_name=info.name,
            simulated=method == ConnectionMethod.OAUTH and self.cfg.simulated,
        )
        self._save(link, stored_token)
        self._sync_annotation()
        logger.info(
            "GitHub account %s linked via %s%s",
            link.external_username,
            method.value,
            " (simulated)" if link.simulated else "",
        )
        self.events.publish(ev.LINK_CONNECTED, link=link)
        return link

    def begin_oauth(self) -> str:
        """
        Start the GitHub OAuth link flow and return the authorization URL.

        With the simulated identity provider the URL points straight back at the local
        callback, carrying the pending state, so the flow still goes through the guard.
        """
        if not self.cfg.github_oauth_enabled:
            raise ConfigurationError("GitHub OAuth linking is not enabled")
        redirect_uri = self.cfg.redirect_uri_for(LINK_PROVIDER)
        url = self.guard.begin_redirect(get_provider(self.cfg, LINK_PROVIDER), redirect_uri=redirect_uri)
        if not self.cfg.simulated:
            return url
        state = parse_qs(urlparse(url).query).get("state", [""])[0]
        return f"{redirect_uri}?{urlencode({'code': 'simulated', 'state': state})}"

    def disconnect(self) -> None:
        """Remove the link and its annotation. Safe to call when nothing is linked."""
        was_connected = self.is_connected()
        for key in LINK_KEYS:
            self.storage.remove(key)
        self._sync_annotation()
        if was_connected:
            logger.info("GitHub account unlinked")
            self.events.publish(ev.LINK_DISCONNECTED)
