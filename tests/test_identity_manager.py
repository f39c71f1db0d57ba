from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from devdash.auth import events as ev
from devdash.auth.backend import BackendClient
from devdash.auth.errors import (
    ConfigurationError,
    ExpiredSessionError,
    NetworkError,
    SecurityError,
    ValidationError,
)
from devdash.auth.events import AuthEvents
from devdash.auth.exchange import (
    BackendExchange,
    ExchangeResult,
    FallbackExchange,
    SimulatedExchange,
    build_exchange,
)
from devdash.auth.manager import IdentityManager
from devdash.auth.models import AuthMethod, AuthState, PendingRedirect, StorageTier, User
from devdash.auth.redirect import RedirectGuard
from devdash.auth.session import REMEMBER_KEY, TOKEN_KEY, SessionStore
from devdash.auth.token import decode_claims, issue

BACKEND_USER = User(id="u-42", email="ada@contoso.com", display_name="Ada Lovelace", provider="EntraID")


class RecordingStorage:
    """MemoryStorage that counts writes."""

    def __init__(self) -> None:
        self.data = {}
        self.writes = 0

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value) -> None:
        self.writes += 1
        self.data[key] = value

    def remove(self, key) -> None:
        if key in self.data:
            self.writes += 1
            del self.data[key]

    def keys(self):
        return list(self.data)


class StubBackendExchange:
    """Redirect-requiring exchange returning canned results."""

    requires_redirect = True

    def __init__(self, clock, *, fail_with=None) -> None:
        self.clock = clock
        self.fail_with = fail_with
        self.codes = []
        self.refreshed = []

    async def sign_in(self, provider):
        raise ConfigurationError("redirect required")

    async def exchange_code(self, provider, code, redirect_uri):
        if self.fail_with:
            raise self.fail_with
        self.codes.append((provider, code, redirect_uri))
        return ExchangeResult(token=issue(BACKEND_USER, 3600, now=self.clock()), user=BACKEND_USER)

    async def refresh(self, session):
        if self.fail_with:
            raise self.fail_with
        self.refreshed.append(session.token)
        return ExchangeResult(token=issue(session.user, 3600, now=self.clock()), user=session.user)


def _manager(cfg, durable, ephemeral, clock, *, exchange=None, credentials=None, events=None):
    store = SessionStore(durable, ephemeral, fail_closed=cfg.fail_closed, clock=clock)
    guard = RedirectGuard(ephemeral, secret="test-secret", ttl_seconds=cfg.redirect_ttl_seconds, clock=clock)
    exchange = exchange or SimulatedExchange(ttl_seconds=cfg.session_ttl_seconds, clock=clock)
    return IdentityManager(
        cfg,
        store,
        guard,
        exchange,
        credentials=credentials,
        events=events,
        clock=clock,
    )


def _state(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


# ---- credential sign-in ----


@pytest.mark.asyncio
async def test_remembered_credential_login(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    """Scenario: remember-me writes a durable session expiring at iat + session timeout."""
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    s = await m.login_with_credential("developer@devdash.com", "dev123", remember=True)

    assert s.storage_tier == StorageTier.DURABLE
    assert s.method == AuthMethod.email_password()
    assert s.expires_at == int(clock()) + 3600
    assert decode_claims(s.token)["iat"] == int(clock())
    assert durable.get(REMEMBER_KEY) == "true"
    assert durable.get(TOKEN_KEY) == s.token
    assert m.state == AuthState.AUTHENTICATED
    assert m.get_current_user().email == "developer@devdash.com"
    assert m.is_authenticated() is True


@pytest.mark.asyncio
async def test_credential_login_without_remember_is_ephemeral(
    config_factory, durable, ephemeral, clock, demo_credentials
) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    s = await m.login_with_credential("admin@devdash.com", "admin123")
    assert s.storage_tier == StorageTier.EPHEMERAL
    assert durable.keys() == []
    assert ephemeral.get(TOKEN_KEY) == s.token
    assert s.user.role == "admin"


@pytest.mark.asyncio
async def test_invalid_credential_is_generic(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    with pytest.raises(ValidationError) as wrong_secret:
        await m.login_with_credential("admin@devdash.com", "nope")
    with pytest.raises(ValidationError) as unknown:
        await m.login_with_credential("ghost@devdash.com", "admin123")

    assert str(wrong_secret.value) == str(unknown.value) == "Invalid credential"
    assert m.state == AuthState.UNAUTHENTICATED
    assert durable.keys() == [] and ephemeral.keys() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("identifier,secret", [("", "x"), ("a@b.co", ""), ("not-an-email", "x")])
async def test_credential_input_validation(
    config_factory, durable, ephemeral, clock, demo_credentials, identifier, secret
) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    with pytest.raises(ValidationError):
        await m.login_with_credential(identifier, secret)


@pytest.mark.asyncio
async def test_credential_login_rate_limited(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    m = _manager(config_factory(login_max_attempts=2), durable, ephemeral, clock, credentials=demo_credentials)
    for _ in range(2):
        with pytest.raises(ValidationError):
            await m.login_with_credential("admin@devdash.com", "nope")

    with pytest.raises(ValidationError) as ei:
        await m.login_with_credential("admin@devdash.com", "admin123")
    assert "Too many" in str(ei.value)

    clock.advance(301)
    s = await m.login_with_credential("admin@devdash.com", "admin123")
    assert s.user.id == "user_admin"


@pytest.mark.asyncio
async def test_credential_login_disabled_under_enterprise(
    config_factory, durable, ephemeral, clock, demo_credentials
) -> None:
    m = _manager(config_factory(primary_scheme="enterprise"), durable, ephemeral, clock, credentials=demo_credentials)
    with pytest.raises(ConfigurationError):
        await m.login_with_credential("admin@devdash.com", "admin123")


# ---- redirect sign-in ----


@pytest.mark.asyncio
async def test_simulated_redirect_login_completes_immediately(config_factory, durable, ephemeral, clock) -> None:
    m = _manager(config_factory(primary_scheme="enterprise"), durable, ephemeral, clock)
    s = await m.login_with_redirect_provider("enterprise")

    assert not isinstance(s, PendingRedirect)
    assert s.simulated is True
    assert s.storage_tier == StorageTier.DURABLE
    assert s.method == AuthMethod.enterprise()
    assert s.user.email == "demo.user@company.com"
    assert m.is_authenticated() is True


@pytest.mark.asyncio
async def test_social_provider_method_tag(config_factory, durable, ephemeral, clock) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock)
    s = await m.login_with_redirect_provider("google")
    assert s.method.tag == "oauth_google"
    assert s.user.provider == "google"


@pytest.mark.asyncio
async def test_provider_must_be_enabled_by_scheme(config_factory, durable, ephemeral, clock) -> None:
    m = _manager(config_factory(primary_scheme="enterprise"), durable, ephemeral, clock)
    with pytest.raises(ConfigurationError):
        await m.login_with_redirect_provider("google")

    m = _manager(config_factory(social_providers=["github"]), durable, ephemeral, clock)
    with pytest.raises(ConfigurationError):
        await m.login_with_redirect_provider("enterprise")
    with pytest.raises(ConfigurationError):
        await m.login_with_redirect_provider("google")


@pytest.mark.asyncio
async def test_backend_redirect_flow(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="backend", entra_client_id="entra-client")
    exchange = StubBackendExchange(clock)
    m = _manager(cfg, durable, ephemeral, clock, exchange=exchange)

    pending = await m.login_with_redirect_provider("enterprise")
    assert isinstance(pending, PendingRedirect)
    assert pending.authorization_url.startswith("https://login.microsoftonline.com/common/")
    assert m.is_authenticated() is False

    s = await m.handle_redirect_callback("enterprise", "auth-code", _state(pending.authorization_url))
    assert s.user == BACKEND_USER
    assert s.storage_tier == StorageTier.DURABLE
    assert s.simulated is False
    assert exchange.codes == [("enterprise", "auth-code", "http://devdash.test/api/auth/callback/enterprise")]
    assert m.state == AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_forged_callback_raises_security_error(config_factory, durable, ephemeral, clock) -> None:
    """Scenario: a callback with the wrong state never reaches the exchange."""
    cfg = config_factory(primary_scheme="enterprise", identity_mode="backend", entra_client_id="entra-client")
    exchange = StubBackendExchange(clock)
    m = _manager(cfg, durable, ephemeral, clock, exchange=exchange)

    await m.login_with_redirect_provider("enterprise")
    with pytest.raises(SecurityError):
        await m.handle_redirect_callback("enterprise", "auth-code", "forged")

    assert exchange.codes == []
    assert m.state == AuthState.UNAUTHENTICATED
    assert m.is_authenticated() is False


@pytest.mark.asyncio
async def test_callback_missing_code(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="backend", entra_client_id="entra-client")
    m = _manager(cfg, durable, ephemeral, clock, exchange=StubBackendExchange(clock))
    pending = await m.login_with_redirect_provider("enterprise")
    with pytest.raises(ValidationError):
        await m.handle_redirect_callback("enterprise", "", _state(pending.authorization_url))


@pytest.mark.asyncio
async def test_fallback_flags_simulated_identity(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="fallback", entra_client_id="entra-client")
    fallback = FallbackExchange(
        StubBackendExchange(clock, fail_with=NetworkError("down")),
        SimulatedExchange(ttl_seconds=cfg.session_ttl_seconds, clock=clock),
    )
    m = _manager(cfg, durable, ephemeral, clock, exchange=fallback)

    pending = await m.login_with_redirect_provider("enterprise")
    s = await m.handle_redirect_callback("enterprise", "code", _state(pending.authorization_url))
    assert s.simulated is True
    assert m.current_session().simulated is True


@pytest.mark.asyncio
async def test_fallback_does_not_mask_rejections(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="fallback", entra_client_id="entra-client")
    fallback = FallbackExchange(
        StubBackendExchange(clock, fail_with=ValidationError("Token exchange failed (status=400)")),
        SimulatedExchange(ttl_seconds=cfg.session_ttl_seconds, clock=clock),
    )
    m = _manager(cfg, durable, ephemeral, clock, exchange=fallback)
    pending = await m.login_with_redirect_provider("enterprise")
    with pytest.raises(ValidationError):
        await m.handle_redirect_callback("enterprise", "code", _state(pending.authorization_url))


def test_build_exchange_by_mode(config_factory) -> None:
    client = BackendClient("http://backend.test/api")
    assert isinstance(build_exchange(config_factory(identity_mode="simulated"), client), SimulatedExchange)
    assert isinstance(build_exchange(config_factory(identity_mode="backend"), client), BackendExchange)
    assert isinstance(build_exchange(config_factory(identity_mode="fallback"), client), FallbackExchange)


# ---- refresh / logout ----


@pytest.mark.asyncio
async def test_refresh_without_session_writes_nothing(config_factory, clock) -> None:
    durable, ephemeral = RecordingStorage(), RecordingStorage()
    m = _manager(config_factory(), durable, ephemeral, clock)
    with pytest.raises(ExpiredSessionError):
        await m.refresh_token()
    assert durable.writes == 0
    assert ephemeral.writes == 0


@pytest.mark.asyncio
async def test_refresh_preserves_user_method_and_tier(
    config_factory, durable, ephemeral, clock, demo_credentials
) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    s = await m.login_with_credential("developer@devdash.com", "dev123", remember=False)

    clock.advance(1800)
    token = await m.refresh_token()
    assert token != s.token

    refreshed = m.current_session()
    assert refreshed.token == token
    assert refreshed.user == s.user
    assert refreshed.method == s.method
    assert refreshed.storage_tier == StorageTier.EPHEMERAL
    assert refreshed.expires_at == int(clock()) + 3600
    assert m.state == AuthState.AUTHENTICATED


@pytest.mark.asyncio
async def test_refresh_failure_clears_session(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="backend", entra_client_id="entra-client")
    exchange = StubBackendExchange(clock)
    m = _manager(cfg, durable, ephemeral, clock, exchange=exchange)
    pending = await m.login_with_redirect_provider("enterprise")
    await m.handle_redirect_callback("enterprise", "c", _state(pending.authorization_url))

    exchange.fail_with = ExpiredSessionError("Token refresh failed (status=401)")
    with pytest.raises(ExpiredSessionError):
        await m.refresh_token()
    assert m.is_authenticated() is False
    assert m.state == AuthState.UNAUTHENTICATED
    assert durable.get(TOKEN_KEY) is None


@pytest.mark.asyncio
async def test_refresh_of_expired_session(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    await m.login_with_credential("developer@devdash.com", "dev123", remember=True)
    clock.advance(3601)
    with pytest.raises(ExpiredSessionError):
        await m.refresh_token()
    assert durable.keys() == []


class GatedExchange(StubBackendExchange):
    """Refresh blocks until released, to interleave a logout."""

    def __init__(self, clock) -> None:
        super().__init__(clock)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def refresh(self, session):
        self.started.set()
        await self.release.wait()
        return await super().refresh(session)


@pytest.mark.asyncio
async def test_logout_during_refresh_wins(config_factory, durable, ephemeral, clock) -> None:
    cfg = config_factory(primary_scheme="enterprise", identity_mode="backend", entra_client_id="entra-client")
    exchange = GatedExchange(clock)
    m = _manager(cfg, durable, ephemeral, clock, exchange=exchange)
    pending = await m.login_with_redirect_provider("enterprise")
    await m.handle_redirect_callback("enterprise", "c", _state(pending.authorization_url))

    task = asyncio.create_task(m.refresh_token())
    await exchange.started.wait()
    assert m.state == AuthState.REFRESHING

    m.logout()
    exchange.release.set()
    with pytest.raises(ExpiredSessionError):
        await task

    assert m.is_authenticated() is False
    assert durable.get(TOKEN_KEY) is None
    assert ephemeral.get(TOKEN_KEY) is None
    assert m.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_logout_clears_session_only(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    durable.set("secondary.link.connected", "true")
    await m.login_with_credential("developer@devdash.com", "dev123", remember=True)

    m.logout()
    assert m.is_authenticated() is False
    assert m.get_current_user() is None
    assert durable.get("secondary.link.connected") == "true"


# ---- restore / reads ----


@pytest.mark.asyncio
async def test_initialize_from_storage(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    first = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    await first.login_with_credential("developer@devdash.com", "dev123", remember=True)

    restarted = _manager(config_factory(), durable, ephemeral, clock)
    assert restarted.state == AuthState.UNAUTHENTICATED
    assert restarted.initialize_from_storage() == AuthState.AUTHENTICATED
    assert restarted.user.email == "developer@devdash.com"
    assert restarted.method == AuthMethod.email_password()


def test_initialize_never_raises(config_factory, clock) -> None:
    class BrokenStorage(RecordingStorage):
        def get(self, key):
            raise OSError("disk gone")

    m = _manager(config_factory(), BrokenStorage(), RecordingStorage(), clock)
    assert m.initialize_from_storage() == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_current_user_reflects_external_logout(
    config_factory, durable, ephemeral, clock, demo_credentials
) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    await m.login_with_credential("developer@devdash.com", "dev123", remember=True)

    # Another process clears the durable tier.
    other = SessionStore(durable, ephemeral, clock=clock)
    other.clear()

    assert m.get_current_user() is None
    assert m.state == AuthState.UNAUTHENTICATED


@pytest.mark.asyncio
async def test_current_user_reflects_link_state(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials)
    linked = {"value": False}
    m.link_connected = lambda: linked["value"]
    await m.login_with_credential("developer@devdash.com", "dev123")

    assert m.get_current_user().github_connected is False
    linked["value"] = True
    assert m.get_current_user().github_connected is True


@pytest.mark.asyncio
async def test_events_are_published(config_factory, durable, ephemeral, clock, demo_credentials) -> None:
    events = AuthEvents()
    seen = []
    events.subscribe("auth.*", lambda e: seen.append(e.event_type))
    m = _manager(config_factory(), durable, ephemeral, clock, credentials=demo_credentials, events=events)

    await m.login_with_credential("developer@devdash.com", "dev123")
    await m.refresh_token()
    m.logout()

    assert ev.LOGIN in seen
    assert ev.REFRESH in seen
    assert seen[-1] == ev.LOGOUT
    assert seen.count(ev.STATE_CHANGED) >= 4
