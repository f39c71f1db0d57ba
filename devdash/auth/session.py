from __future__ import annotations

import json
import logging
import time
from typing import Callable, Optional

from devdash.auth.models import AuthMethod, Session, StorageTier, User
from devdash.auth.storage import KeyValueStorage
from devdash.auth.token import decode_expiry

logger = logging.getLogger(__name__)

TOKEN_KEY = "auth.token"
USER_KEY = "auth.user"
METHOD_KEY = "auth.method"
SIMULATED_KEY = "auth.simulated"
# Durable tier only: its presence means the active session lives in durable storage.
REMEMBER_KEY = "auth.rememberMe"

SESSION_KEYS = (TOKEN_KEY, USER_KEY, METHOD_KEY, SIMULATED_KEY)


class SessionStore:
    """
    Persists the single active Session in one of two storage tiers.

    The tier is chosen when the session is written and recorded by the durable
    `auth.rememberMe` marker; every read goes back to storage so that external
    changes (another process logging out) are observed.
    """

    def __init__(
        self,
        durable: KeyValueStorage,
        ephemeral: KeyValueStorage,
        *,
        fail_closed: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.ephemeral = ephemeral
        self.fail_closed = fail_closed
        self._clock = clock

    def active_tier(self) -> StorageTier:
        if self.durable.get(REMEMBER_KEY) == "true":
            return StorageTier.DURABLE
        return StorageTier.EPHEMERAL

    def _storage(self, tier: StorageTier) -> KeyValueStorage:
        return self.durable if tier == StorageTier.DURABLE else self.ephemeral

    @staticmethod
    def _clear_keys(storage: KeyValueStorage) -> None:
        for key in SESSION_KEYS:
            storage.remove(key)

    def read(self) -> Optional[Session]:
        tier = self.active_tier()
        storage = self._storage(tier)
        token = storage.get(TOKEN_KEY)
        raw_user = storage.get(USER_KEY)
        if not token or not raw_user:
            return None
        try:
            data = json.loads(raw_user)
            if not isinstance(data, dict):
                raise ValueError("user record is not an object")
            user = User.from_dict(data)
            method = AuthMethod.from_tag(storage.get(METHOD_KEY) or "")
        except (ValueError, TypeError) as e:
            logger.warning("Stored session is unreadable (%s tier): %s", tier.value, str(e))
            return None
        return Session(
            token=token,
            user=user,
            method=method,
            expires_at=decode_expiry(token),
            storage_tier=tier,
            simulated=storage.get(SIMULATED_KEY) == "true",
        )

    def write(self, session: Session) -> None:
        """Replace the active session. The other tier is cleared first so no stale copy survives."""
        if session.storage_tier == StorageTier.DURABLE:
            self._clear_keys(self.ephemeral)
        else:
            self._clear_keys(self.durable)
            self.durable.remove(REMEMBER_KEY)

        storage = self._storage(session.storage_tier)
        storage.set(TOKEN_KEY, session.token)
        storage.set(USER_KEY, json.dumps(session.user.to_dict(), sort_keys=True))
        storage.set(METHOD_KEY, session.method.tag)
        if session.simulated:
            storage.set(SIMULATED_KEY, "true")
        else:
            storage.remove(SIMULATED_KEY)

        if session.storage_tier == StorageTier.DURABLE:
            self.durable.set(REMEMBER_KEY, "true")

    def update_user(self, user: User) -> bool:
        """Rewrite the stored user of the active session, in its own tier. False when there is none."""
        session = self.read()
        if session is None:
            return False
        storage = self._storage(session.storage_tier)
        storage.set(USER_KEY, json.dumps(user.to_dict(), sort_keys=True))
        return True

    def clear(self) -> None:
        self._clear_keys(self.ephemeral)
        self._clear_keys(self.durable)
        self.durable.remove(REMEMBER_KEY)

    def is_authenticated(self) -> bool:
        session = self.read()
        if session is None:
            return False
        if session.is_expired(self._clock(), fail_closed=self.fail_closed):
            logger.info("Stored session for %s expired; clearing", session.user.email)
            self.clear()
            return False
        return True
