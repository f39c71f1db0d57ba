"""
Identity exchange strategies.

The manager talks to one `IdentityExchange`; which one is chosen by
`DEVDASH_IDENTITY_MODE`:

- backend: code exchange and refresh through the backend API
- simulated: a local stand-in identity provider (no network)
- fallback: backend first, the stand-in when the backend is unreachable
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from devdash.auth.backend import BackendClient
from devdash.auth.config import AuthConfig
from devdash.auth.errors import ConfigurationError, NetworkError
from devdash.auth.models import Session, User
from devdash.auth.token import issue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExchangeResult:
    token: str
    user: User
    simulated: bool = False


class IdentityExchange(Protocol):
    # False when sign-in can complete without leaving the application.
    requires_redirect: bool

    async def sign_in(self, provider: str) -> ExchangeResult:
        ...

    async def exchange_code(self, provider: str, code: str, redirect_uri: str) -> ExchangeResult:
        ...

    async def refresh(self, session: Session) -> ExchangeResult:
        ...


class SimulatedExchange:
    """Local stand-in for a real provider: same result shape, deterministic users."""

    requires_redirect = False

    def __init__(self, *, ttl_seconds: int, tenant_id: str = "demo-tenant", clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.tenant_id = tenant_id
        self._clock = clock

    def simulate_user(self, provider: str) -> User:
        if provider == "enterprise":
            return User(
                id="entra_demo-user",
                email="demo.user@company.com",
                display_name="Demo User",
                role="developer",
                provider="EntraID",
                tenant_id=self.tenant_id,
            )
        return User(
            id=f"{provider}_demo-user",
            email=f"demo.user@{provider}.example",
            display_name=f"Demo {provider.title()} User",
            role="developer",
            provider=provider,
        )

    def _issue(self, user: User) -> ExchangeResult:
        token = issue(user, self.ttl_seconds, now=self._clock(), issuer=f"devdash-simulated:{user.provider or 'local'}")
        return ExchangeResult(token=token, user=user, simulated=True)

    async def sign_in(self, provider: str) -> ExchangeResult:
        logger.info("Simulated sign-in for provider=%s", provider)
        return self._issue(self.simulate_user(provider))

    async def exchange_code(self, provider: str, code: str, redirect_uri: str) -> ExchangeResult:
        return self._issue(self.simulate_user(provider))

    async def refresh(self, session: Session) -> ExchangeResult:
        return self._issue(session.user)


class BackendExchange:
    """Real exchange through the backend collaborator."""

    requires_redirect = True

    def __init__(self, client: BackendClient) -> None:
        self.client = client

    async def sign_in(self, provider: str) -> ExchangeResult:
        raise ConfigurationError(f"Provider '{provider}' requires a browser redirect")

    async def exchange_code(self, provider: str, code: str, redirect_uri: str) -> ExchangeResult:
        token, user = await asyncio.to_thread(self.client.exchange_code, code, redirect_uri)
        return ExchangeResult(token=token, user=user)

    async def refresh(self, session: Session) -> ExchangeResult:
        token, user = await asyncio.to_thread(self.client.refresh, session.token)
        return ExchangeResult(token=token, user=user)


class FallbackExchange:
    """Backend first; on NetworkError only, the simulated result (flagged `simulated`)."""

    requires_redirect = True

    def __init__(self, primary: BackendExchange, fallback: SimulatedExchange) -> None:
        self.primary = primary
        self.fallback = fallback

    async def sign_in(self, provider: str) -> ExchangeResult:
        return await self.primary.sign_in(provider)

    async def exchange_code(self, provider: str, code: str, redirect_uri: str) -> ExchangeResult:
        try:
            return await self.primary.exchange_code(provider, code, redirect_uri)
        except NetworkError as e:
            logger.warning("Backend unreachable (%s); using simulated identity for provider=%s", str(e), provider)
            return await self.fallback.exchange_code(provider, code, redirect_uri)

    async def refresh(self, session: Session) -> ExchangeResult:
        try:
            return await self.primary.refresh(session)
        except NetworkError as e:
            logger.warning("Backend unreachable (%s); re-issuing simulated token", str(e))
            return await self.fallback.refresh(session)


def build_exchange(cfg: AuthConfig, client: BackendClient, *, clock: Callable[[], float] = time.time) -> IdentityExchange:
    simulated = SimulatedExchange(ttl_seconds=cfg.session_ttl_seconds, tenant_id=cfg.entra_tenant_id, clock=clock)
    if cfg.identity_mode == "simulated":
        return simulated
    backend = BackendExchange(client)
    if cfg.identity_mode == "fallback":
        return FallbackExchange(backend, simulated)
    return backend
