"""
Pytest config.

Local imports like `import devdash` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used without an editable install that doesn't happen
reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from devdash.auth.config import AuthConfig, load_auth_config  # noqa: E402
from devdash.auth.local import CredentialDirectory  # noqa: E402
from devdash.auth.storage import MemoryStorage  # noqa: E402

T0 = 1_700_000_000.0


class FakeClock:
    """Settable stand-in for time.time."""

    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> AuthConfig:
    values = dict(
        primary_scheme="credentials",
        identity_mode="simulated",
        api_base_url="http://backend.test/api",
        public_base_url="http://devdash.test",
        http_timeout_seconds=5.0,
        session_ttl_seconds=3600,
        redirect_ttl_seconds=600,
        state_secret="test-state-secret",
        state_dir="/nonexistent/devdash",
        token_expiry_policy="fail_closed",
        social_providers=["google", "github"],
        credentials_file=None,
        demo_accounts=True,
        login_max_attempts=5,
        login_window_seconds=300,
        entra_client_id=None,
        entra_tenant_id="common",
        google_client_id=None,
        github_client_id=None,
        github_pat_enabled=True,
        github_oauth_enabled=False,
        github_api_url="https://api.github.test",
        github_probe="direct",
    )
    values.update(overrides)
    return AuthConfig(**values)


@pytest.fixture(autouse=True)
def _clear_config_cache():
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def durable() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def ephemeral() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture(scope="session")
def demo_credentials() -> CredentialDirectory:
    # Low bcrypt cost keeps the suite fast.
    return CredentialDirectory.demo(rounds=4)


@pytest.fixture
def config_factory():
    return make_config
