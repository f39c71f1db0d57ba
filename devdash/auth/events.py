from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

STATE_CHANGED = "auth.state_changed"
LOGIN = "auth.login"
LOGOUT = "auth.logout"
REFRESH = "auth.refresh"
ERROR = "auth.error"
LINK_CONNECTED = "link.connected"
LINK_DISCONNECTED = "link.disconnected"


@dataclass(frozen=True)
class AuthEvent:
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[AuthEvent], None]


def _match(subscribed: str, event_type: str) -> bool:
    if subscribed == "*":
        return True
    if subscribed.endswith(".*"):
        return event_type.startswith(subscribed[:-1])
    return subscribed == event_type


class AuthEvents:
    """
    Synchronous publish/subscribe channel for identity state changes.

    event_type supports exact match ("auth.login"), prefix match ("auth.*") and
    wildcard ("*"). A failing handler is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._subs: List[Tuple[str, Handler]] = []

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        if not callable(handler):
            raise ValueError("handler must be callable")
        entry = (str(event_type), handler)
        self._subs.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subs:
                self._subs.remove(entry)

        return _unsubscribe

    def publish(self, event_type: str, **payload: Any) -> AuthEvent:
        ev = AuthEvent(event_type=event_type, payload=payload)
        for subscribed, handler in list(self._subs):
            if not _match(subscribed, event_type):
                continue
            try:
                handler(ev)
            except Exception:
                logger.exception("Auth event handler failed for %s", event_type)
        return ev
