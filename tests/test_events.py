from __future__ import annotations

import pytest

from devdash.auth.events import LINK_CONNECTED, LOGIN, LOGOUT, AuthEvents


def test_exact_prefix_and_wildcard_matching() -> None:
    events = AuthEvents()
    seen = {"exact": [], "prefix": [], "all": []}
    events.subscribe(LOGIN, lambda e: seen["exact"].append(e.event_type))
    events.subscribe("auth.*", lambda e: seen["prefix"].append(e.event_type))
    events.subscribe("*", lambda e: seen["all"].append(e.event_type))

    events.publish(LOGIN, user=None)
    events.publish(LOGOUT)
    events.publish(LINK_CONNECTED)

    assert seen["exact"] == [LOGIN]
    assert seen["prefix"] == [LOGIN, LOGOUT]
    assert seen["all"] == [LOGIN, LOGOUT, LINK_CONNECTED]


def test_payload_is_delivered() -> None:
    events = AuthEvents()
    got = []
    events.subscribe(LOGIN, got.append)
    ev = events.publish(LOGIN, method="email")
    assert got == [ev]
    assert got[0].payload == {"method": "email"}


def test_unsubscribe() -> None:
    events = AuthEvents()
    got = []
    unsubscribe = events.subscribe("*", got.append)
    unsubscribe()
    unsubscribe()
    events.publish(LOGIN)
    assert got == []


def test_failing_handler_is_isolated() -> None:
    events = AuthEvents()
    got = []

    def boom(_e) -> None:
        raise RuntimeError("handler bug")

    events.subscribe(LOGIN, boom)
    events.subscribe(LOGIN, got.append)
    events.publish(LOGIN)
    assert len(got) == 1


def test_handler_must_be_callable() -> None:
    with pytest.raises(ValueError):
        AuthEvents().subscribe(LOGIN, "nope")  # type: ignore[arg-type]
