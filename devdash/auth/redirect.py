from __future__ import annotations

import hmac
import logging
import time
from dataclasses import asdict
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from devdash.auth.errors import SecurityError
from devdash.auth.models import RedirectState
from devdash.auth.providers import RedirectProvider, build_authorize_url
from devdash.auth.storage import KeyValueStorage
from devdash.auth.util import random_token

logger = logging.getLogger(__name__)

STATE_SALT = "devdash-redirect-state-v1"
STATE_KEY_PREFIX = "redirect.state."
# Deliberately identical for missing, expired, tampered and mismatched states.
INVALID_STATE_MESSAGE = "Invalid state - possible forgery attempt"


def state_key(provider: str) -> str:
    return f"{STATE_KEY_PREFIX}{provider}"


class RedirectGuard:
    """
    One-time anti-forgery values for browser-redirect sign-in flows.

    At most one RedirectState is pending per provider; starting a second flow for the
    same provider overwrites the first. States are signed so that a value planted in
    storage by something else never validates.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        secret: Optional[str] = None,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._serializer = URLSafeTimedSerializer(secret_key=secret or random_token(32), salt=STATE_SALT)

    def begin_redirect(self, provider: RedirectProvider, *, redirect_uri: str) -> str:
        state = RedirectState(
            provider=provider.name,
            nonce=random_token(16),
            csrf_token=random_token(32),
            created_at=self._clock(),
        )
        self.storage.set(state_key(provider.name), self._serializer.dumps(asdict(state)))
        logger.info("Redirect sign-in started for provider=%s", provider.name)
        return build_authorize_url(provider, redirect_uri=redirect_uri, state=state.csrf_token, nonce=state.nonce)

    def _load(self, raw: Optional[str]) -> Optional[RedirectState]:
        if not raw:
            return None
        try:
            data = self._serializer.loads(raw, max_age=max(self.ttl_seconds, 1))
            state = RedirectState(
                provider=str(data["provider"]),
                nonce=str(data["nonce"]),
                csrf_token=str(data["csrf_token"]),
                created_at=float(data["created_at"]),
            )
        except (BadSignature, KeyError, TypeError, ValueError):
            return None
        if self._clock() - state.created_at > self.ttl_seconds:
            return None
        return state

    def complete_redirect(self, provider: str, returned_state: Optional[str]) -> RedirectState:
        """
        Validate and consume the pending state for `provider`.

        The pending state is deleted before it is compared, so it can never be used
        twice, whatever the outcome.

        Raises:
            SecurityError: the same error whether no flow was started, the state
                expired, or the returned value does not match.
        """
        key = state_key(provider)
        raw = self.storage.get(key)
        self.storage.remove(key)

        stored = self._load(raw)
        returned = returned_state or ""
        if stored is None or not returned or not hmac.compare_digest(
            stored.csrf_token.encode("utf-8"), returned.encode("utf-8")
        ):
            logger.warning("Rejected redirect callback for provider=%s", provider)
            raise SecurityError(INVALID_STATE_MESSAGE)

        logger.info("Redirect state validated for provider=%s", provider)
        return stored
