"""
Primary identity manager.

State machine:

    Unauthenticated -> Authenticating -> Authenticated -> Refreshing -> Authenticated
                                                                     -> Unauthenticated

Any failed sign-in settles back on whatever the Session Store holds.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import replace
from typing import Callable, Optional, Union

from devdash.auth import events as ev
from devdash.auth.config import AuthConfig
from devdash.auth.errors import ConfigurationError, ExpiredSessionError, ValidationError
from devdash.auth.events import AuthEvents
from devdash.auth.exchange import ExchangeResult, IdentityExchange
from devdash.auth.local import CredentialDirectory
from devdash.auth.models import AuthMethod, AuthState, MethodKind, PendingRedirect, Session, StorageTier, User
from devdash.auth.providers import get_provider
from devdash.auth.rate_limit import LoginAttemptLimiter
from devdash.auth.redirect import RedirectGuard
from devdash.auth.session import SessionStore
from devdash.auth.token import decode_expiry, issue

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentityManager:
    def __init__(
        self,
        cfg: AuthConfig,
        store: SessionStore,
        guard: RedirectGuard,
        exchange: IdentityExchange,
        *,
        credentials: Optional[CredentialDirectory] = None,
        limiter: Optional[LoginAttemptLimiter] = None,
        events: Optional[AuthEvents] = None,
        link_connected: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.guard = guard
        self.exchange = exchange
        self.credentials = credentials
        self.limiter = limiter or LoginAttemptLimiter(cfg.login_max_attempts, cfg.login_window_seconds, clock=clock)
        self.events = events or AuthEvents()
        self.link_connected = link_connected
        self._clock = clock

        self.state = AuthState.UNAUTHENTICATED
        self.user: Optional[User] = None
        self.method: Optional[AuthMethod] = None

    # ---- state bookkeeping ----

    def _set_state(self, state: AuthState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.debug("Auth state %s -> %s", previous.value, state.value)
        self.events.publish(ev.STATE_CHANGED, previous=previous, state=state)

    def _adopt(self, session: Session) -> None:
        self.user = session.user
        self.method = session.method
        self._set_state(AuthState.AUTHENTICATED)

    def _reset(self) -> None:
        self.user = None
        self.method = None
        self._set_state(AuthState.UNAUTHENTICATED)

    def _sync_state(self) -> None:
        """Re-derive in-memory state from storage after a failed or interrupted operation."""
        session = self.store.read() if self.store.is_authenticated() else None
        if session is None:
            self._reset()
        else:
            self._adopt(session)

    def _commit(self, session: Session) -> Session:
        self.store.write(session)
        self._adopt(session)
        logger.info(
            "Signed in %s via %s (tier=%s%s)",
            session.user.email,
            session.method.tag,
            session.storage_tier.value,
            ", simulated" if session.simulated else "",
        )
        self.events.publish(ev.LOGIN, user=session.user, method=session.method.tag, simulated=session.simulated)
        return session

    def _session_from(self, result: ExchangeResult, method: AuthMethod, tier: StorageTier) -> Session:
        return Session(
            token=result.token,
            user=result.user,
            method=method,
            expires_at=decode_expiry(result.token),
            storage_tier=tier,
            simulated=result.simulated,
        )

    # ---- reads ----

    def initialize_from_storage(self) -> AuthState:
        """
        Restore in-memory state from a stored session on process start.

        Never raises: anything that goes wrong leaves the manager Unauthenticated.
        """
        try:
            if self.store.is_authenticated():
                session = self.store.read()
                if session is not None:
                    self._adopt(session)
                    logger.info("Restored session for %s (%s)", session.user.email, session.method.tag)
                    return self.state
        except Exception as e:
            logger.warning("Failed to initialize auth from storage: %s", str(e))
        self._reset()
        return self.state

    def is_authenticated(self) -> bool:
        return self.store.is_authenticated()

    def current_session(self) -> Optional[Session]:
        if not self.store.is_authenticated():
            if self.state == AuthState.AUTHENTICATED:
                # Cleared elsewhere (expiry, another process logging out).
                self._reset()
            return None
        return self.store.read()

    def get_current_user(self) -> Optional[User]:
        session = self.current_session()
        if session is None:
            return None
        user = session.user
        if self.link_connected is not None:
            connected = bool(self.link_connected())
            if connected != user.github_connected:
                user = replace(user, github_connected=connected)
        return user

    # ---- sign-in ----

    async def login_with_credential(self, identifier: str, secret: str, remember: bool = False) -> Session:
        """
        Email/password sign-in.

        Raises:
            ConfigurationError: credential sign-in is not the active scheme
            ValidationError: missing/malformed input, rate limited, or no matching credential
        """
        if not self.cfg.credentials_enabled or self.credentials is None:
            raise ConfigurationError("Email/password sign-in is not enabled")

        ident = (identifier or "").strip()
        if not ident or not secret:
            raise ValidationError("Email and password are required")
        if not _EMAIL_RE.match(ident):
            raise ValidationError("Enter a valid email address")

        allowed, _ = self.limiter.check(ident)
        if not allowed:
            raise ValidationError("Too many failed sign-in attempts. Please try again later.")

        self._set_state(AuthState.AUTHENTICATING)
        try:
            # bcrypt is deliberately slow; keep it off the event loop.
            user = await asyncio.to_thread(self.credentials.authenticate, ident, secret)
        except BaseException:
            self._sync_state()
            raise

        if user is None:
            remaining = self.limiter.record_failure(ident)
            logger.info("Credential sign-in rejected for %s (%d attempts remaining)", ident, remaining)
            self._sync_state()
            raise ValidationError("Invalid credential")

        self.limiter.reset(ident)
        token = issue(user, self.cfg.session_ttl_seconds, now=self._clock())
        tier = StorageTier.DURABLE if remember else StorageTier.EPHEMERAL
        return self._commit(self._session_from(ExchangeResult(token=token, user=user), AuthMethod.email_password(), tier))

    def _require_redirect_provider(self, provider: str) -> str:
        name = (provider or "").strip().lower()
        if name not in self.cfg.redirect_providers():
            raise ConfigurationError(f"Sign-in with '{name or provider}' is not enabled")
        return name

    async def login_with_redirect_provider(self, provider: str) -> Union[Session, PendingRedirect]:
        """
        Start a redirect-based sign-in.

        Returns a PendingRedirect carrying the authorization URL, or, when the
        simulated identity provider is configured, the finished Session.
        """
        name = self._require_redirect_provider(provider)
        method = AuthMethod.for_provider(name)

        if not self.exchange.requires_redirect:
            self._set_state(AuthState.AUTHENTICATING)
            try:
                result = await self.exchange.sign_in(name)
            except BaseException:
                self._sync_state()
                raise
            return self._commit(self._session_from(result, method, StorageTier.DURABLE))

        url = self.guard.begin_redirect(get_provider(self.cfg, name), redirect_uri=self.cfg.redirect_uri_for(name))
        return PendingRedirect(provider=name, authorization_url=url)

    async def handle_redirect_callback(self, provider: str, code: str, state: str) -> Session:
        """
        Finish a redirect-based sign-in.

        Raises:
            SecurityError: unchanged from the Redirect-Flow Guard
            ValidationError: missing code or rejected exchange
            NetworkError: backend unreachable (backend mode)
        """
        name = self._require_redirect_provider(provider)
        self._set_state(AuthState.AUTHENTICATING)
        try:
            self.guard.complete_redirect(name, state)
            if not (code or "").strip():
                raise ValidationError("Missing authorization code")
            result = await self.exchange.exchange_code(name, code.strip(), self.cfg.redirect_uri_for(name))
        except BaseException:
            self._sync_state()
            raise
        return self._commit(self._session_from(result, AuthMethod.for_provider(name), StorageTier.DURABLE))

    # ---- session lifecycle ----

    async def refresh_token(self) -> str:
        """
        Re-issue the bearer token, keeping user, method and storage tier.

        Raises:
            ExpiredSessionError: no session (nothing is written), an expired session,
                a failed refresh (the session is cleared), or a session that ended
                while the refresh was in flight (nothing is written).
        """
        session = self.store.read()
        if session is None:
            raise ExpiredSessionError("No active session to refresh")
        if session.is_expired(self._clock(), fail_closed=self.cfg.fail_closed):
            self.store.clear()
            self._reset()
            raise ExpiredSessionError("Session expired. Please sign in again.")

        self._set_state(AuthState.REFRESHING)
        try:
            if session.method.kind == MethodKind.EMAIL_PASSWORD:
                # Credential sessions are issued locally and re-issued the same way.
                token = issue(session.user, self.cfg.session_ttl_seconds, now=self._clock())
                result = ExchangeResult(token=token, user=session.user)
            else:
                result = await self.exchange.refresh(session)
        except Exception as e:
            logger.warning("Token refresh failed for %s: %s", session.user.email, str(e))
            current = self.store.read()
            if current is not None and current.token == session.token:
                self.store.clear()
            self._sync_state()
            raise ExpiredSessionError("Session expired. Please sign in again.") from e

        # Re-check right before writing: a logout (or a new sign-in) that landed while
        # the refresh was in flight must win.
        current = self.store.read()
        if current is None or current.token != session.token:
            logger.info("Session changed during refresh; discarding refreshed token")
            self._sync_state()
            raise ExpiredSessionError("Session ended during refresh")

        refreshed = replace(
            current,
            token=result.token,
            expires_at=decode_expiry(result.token),
            simulated=current.simulated or result.simulated,
        )
        self.store.write(refreshed)
        self._adopt(refreshed)
        self.events.publish(ev.REFRESH, user=refreshed.user, expires_at=refreshed.expires_at)
        logger.info("Refreshed session for %s", refreshed.user.email)
        return refreshed.token

    def logout(self) -> None:
        """Clear the primary session. The GitHub link is not touched."""
        session = self.store.read()
        self.store.clear()
        self._reset()
        if session is not None:
            logger.info("Signed out %s", session.user.email)
        self.events.publish(ev.LOGOUT, user=session.user if session else None)
