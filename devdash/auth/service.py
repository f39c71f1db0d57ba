from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from devdash.auth import events as ev
from devdash.auth.backend import BackendClient
from devdash.auth.config import AuthConfig
from devdash.auth.errors import AuthError, ExpiredSessionError
from devdash.auth.events import AuthEvents, Handler
from devdash.auth.exchange import build_exchange
from devdash.auth.github import GitHubClient, SecondaryLinkManager
from devdash.auth.local import CredentialDirectory
from devdash.auth.manager import IdentityManager
from devdash.auth.models import AuthSnapshot, AuthState, ConnectionMethod, PendingRedirect, SecondaryLink, Session, User
from devdash.auth.rate_limit import LoginAttemptLimiter
from devdash.auth.redirect import RedirectGuard
from devdash.auth.session import SessionStore
from devdash.auth.storage import FileStorage, KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthService:
    """
    Single entry point for the UI and the HTTP surface.

    Every action toggles `loading`, clears `error` on start and records the message of
    a failing AuthError before re-raising it.
    """

    def __init__(self, identity: IdentityManager, links: SecondaryLinkManager, events: AuthEvents) -> None:
        self.identity = identity
        self.links = links
        self.events = events
        self.loading = False
        self.error: Optional[str] = None

    @property
    def cfg(self) -> AuthConfig:
        return self.identity.cfg

    @property
    def state(self) -> AuthState:
        return self.identity.state

    async def _run(self, action: str, op: Callable[[], Awaitable[T]]) -> T:
        self.loading = True
        self.error = None
        try:
            return await op()
        except AuthError as e:
            self.error = str(e)
            self.events.publish(ev.ERROR, action=action, error=type(e).__name__, message=str(e))
            raise
        finally:
            self.loading = False

    # ---- reads ----

    def initialize(self) -> AuthState:
        return self.identity.initialize_from_storage()

    def is_authenticated(self) -> bool:
        return self.identity.is_authenticated()

    def get_current_user(self) -> Optional[User]:
        user = self.identity.get_current_user()
        return self.links.annotate(user) if user is not None else None

    def current_session(self) -> Optional[Session]:
        return self.identity.current_session()

    def secondary_link(self) -> Optional[SecondaryLink]:
        return self.links.get_link()

    def snapshot(self) -> AuthSnapshot:
        session = self.identity.current_session()
        link = self.links.get_link()
        return AuthSnapshot(
            state=self.identity.state,
            user=self.get_current_user(),
            is_authenticated=session is not None,
            loading=self.loading,
            error=self.error,
            github_connected=link is not None,
            simulated=bool(session and session.simulated),
            github_simulated=bool(link and link.simulated),
        )

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        return self.events.subscribe(event_type, handler)

    def clear_error(self) -> None:
        self.error = None

    # ---- primary identity ----

    async def login_with_credential(self, identifier: str, secret: str, remember: bool = False) -> Session:
        return await self._run("login", lambda: self.identity.login_with_credential(identifier, secret, remember))

    async def login_with_redirect_provider(self, provider: str) -> Union[Session, PendingRedirect]:
        return await self._run("login", lambda: self.identity.login_with_redirect_provider(provider))

    async def handle_redirect_callback(self, provider: str, code: str, state: str) -> Session:
        return await self._run("callback", lambda: self.identity.handle_redirect_callback(provider, code, state))

    async def refresh_token(self) -> str:
        had_session = self.identity.store.read() is not None
        try:
            return await self._run("refresh", self.identity.refresh_token)
        except ExpiredSessionError:
            # Whatever is left of the session is unusable.
            if had_session and self.identity.current_session() is None:
                self.identity.logout()
            raise

    async def logout(self) -> None:
        async def _logout() -> None:
            self.identity.logout()

        await self._run("logout", _logout)

    # ---- secondary link ----

    async def connect_secondary_account(
        self,
        credential_or_code: str,
        method: Union[ConnectionMethod, str] = ConnectionMethod.TOKEN,
        state: Optional[str] = None,
    ) -> SecondaryLink:
        return await self._run("link", lambda: self.links.connect(credential_or_code, method, state))

    def begin_secondary_oauth(self) -> str:
        self.error = None
        try:
            return self.links.begin_oauth()
        except AuthError as e:
            self.error = str(e)
            raise

    async def disconnect_secondary_account(self) -> None:
        async def _disconnect() -> None:
            self.links.disconnect()

        await self._run("unlink", _disconnect)


def build_auth_service(
    cfg: AuthConfig,
    *,
    durable: Optional[KeyValueStorage] = None,
    ephemeral: Optional[KeyValueStorage] = None,
    credentials: Optional[CredentialDirectory] = None,
    clock: Callable[[], float] = time.time,
    **overrides: Any,
) -> AuthService:
    """
    Wire the identity core for `cfg`.

    Storage defaults to a JSON file under `cfg.state_dir` (durable) and process memory
    (ephemeral). Collaborators may be replaced through keyword overrides: `backend`,
    `github`, `exchange`.
    """
    durable = durable if durable is not None else FileStorage(cfg.state_dir)
    ephemeral = ephemeral if ephemeral is not None else MemoryStorage()
    events = AuthEvents()

    if credentials is None and cfg.credentials_enabled:
        if cfg.credentials_file:
            credentials = CredentialDirectory.from_file(cfg.credentials_file)
            logger.info("Loaded %d credential records from %s", len(credentials), cfg.credentials_file)
        else:
            credentials = CredentialDirectory.demo()
            logger.info("Credential sign-in using built-in demo accounts")

    backend = overrides.get("backend") or BackendClient(cfg.api_base_url, timeout=cfg.http_timeout_seconds)
    github = overrides.get("github") or GitHubClient(cfg.github_api_url, timeout=cfg.http_timeout_seconds)
    exchange = overrides.get("exchange") or build_exchange(cfg, backend, clock=clock)

    store = SessionStore(durable, ephemeral, fail_closed=cfg.fail_closed, clock=clock)
    guard = RedirectGuard(ephemeral, secret=cfg.state_secret, ttl_seconds=cfg.redirect_ttl_seconds, clock=clock)

    links = SecondaryLinkManager(cfg, durable, store, guard, github=github, backend=backend, events=events)
    identity = IdentityManager(
        cfg,
        store,
        guard,
        exchange,
        credentials=credentials,
        limiter=LoginAttemptLimiter(cfg.login_max_attempts, cfg.login_window_seconds, clock=clock),
        events=events,
        link_connected=links.is_connected,
        clock=clock,
    )
    logger.info(
        "Auth service ready (scheme=%s, identity=%s, github_probe=%s)",
        cfg.primary_scheme,
        cfg.identity_mode,
        cfg.github_probe,
    )
    return AuthService(identity, links, events)
