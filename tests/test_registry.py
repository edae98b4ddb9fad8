"""
Tests for the connection registry and its state machine
"""
#pylint:disable=line-too-long
from itertools import product

import pytest

from parley.engine.registry import LEGAL_TRANSITIONS, ConnectionRegistry, ConnectionState
from parley.errors import DuplicateTargetError, ErrorCode, IllegalTransitionError, TargetNotFoundError
from parley.events import EventBus, SystemEvent

S = ConnectionState


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry(bus):
    return ConnectionRegistry(bus)


def test_register_and_duplicate(registry):
    record = registry.register("child", origin="https://child.example")
    assert record.state is S.DISCONNECTED
    assert record.missed_heartbeats == 0
    assert "child" in registry and len(registry) == 1
    with pytest.raises(DuplicateTargetError):
        registry.register("child")


@pytest.mark.parametrize("bad_id", ["", None, 42])
def test_register_rejects_malformed_ids(registry, bad_id):
    with pytest.raises(ValueError):
        registry.register(bad_id)
    assert len(registry) == 0


def test_require_unknown_and_not_connected(registry):
    with pytest.raises(TargetNotFoundError) as excinfo:
        registry.require("ghost")
    assert excinfo.value.code is ErrorCode.TARGET_NOT_FOUND

    registry.register("child")
    with pytest.raises(TargetNotFoundError) as excinfo:
        registry.require_connected("child")
    assert excinfo.value.code is ErrorCode.TARGET_NOT_CONNECTED


def test_full_lifecycle(registry):
    registry.register("child")
    for state in (S.CONNECTING, S.CONNECTED, S.DISCONNECTING, S.DISCONNECTED):
        registry.transition("child", state)
        assert registry.get("child").state is state


ILLEGAL = [
    (a, b) for a, b in product(list(S), list(S))
    if b not in LEGAL_TRANSITIONS[a]
]


@pytest.mark.parametrize("start, end", ILLEGAL)
def test_illegal_transitions_raise(registry, start, end):
    registry.register("child")
    # Walk a legal path to `start`
    path = {
        S.DISCONNECTED: [],
        S.CONNECTING: [S.CONNECTING],
        S.CONNECTED: [S.CONNECTING, S.CONNECTED],
        S.DISCONNECTING: [S.CONNECTING, S.CONNECTED, S.DISCONNECTING],
    }[start]
    for state in path:
        registry.transition("child", state)
    with pytest.raises(IllegalTransitionError):
        registry.transition("child", end)
    # The record is untouched by a rejected transition
    assert registry.get("child").state is start


def test_connected_resets_counters(registry):
    record = registry.register("child")
    registry.transition("child", S.CONNECTING)
    registry.transition("child", S.CONNECTED)
    assert record.connected_at is not None
    registry.record_missed_heartbeat("child")
    assert registry.record_send_failure("child") == 1
    assert registry.record_send_failure("child") == 2
    registry.transition("child", S.DISCONNECTED)
    assert record.connected_at is None
    registry.transition("child", S.CONNECTING)
    registry.transition("child", S.CONNECTED)
    assert record.missed_heartbeats == 0
    assert record.consecutive_send_failures == 0


def test_counters(registry):
    record = registry.register("child")
    assert registry.record_missed_heartbeat("child") == 1
    assert registry.record_missed_heartbeat("child") == 2
    registry.record_heartbeat("child")
    assert record.missed_heartbeats == 0
    assert record.last_heartbeat_at is not None
    registry.record_send_failure("child")
    registry.record_send_success("child")
    assert record.consecutive_send_failures == 0
    registry.record_activity("child")
    assert record.last_activity_at is not None
    # unknown targets are ignored by the activity trackers
    registry.record_activity("ghost")


def test_every_transition_is_published(bus, registry):
    changes = []
    bus.on(SystemEvent.STATE_CHANGED, changes.append)
    registry.register("child")
    registry.transition("child", S.CONNECTING, reason="handshake_init")
    registry.transition("child", S.DISCONNECTED, reason="handshake_timeout")
    assert [(c.previous, c.current, c.reason) for c in changes] == [
        (S.DISCONNECTED, S.CONNECTING, "handshake_init"),
        (S.CONNECTING, S.DISCONNECTED, "handshake_timeout"),
    ]
    assert all(c.target_id == "child" for c in changes)


def test_connected_listing_and_clear(registry):
    for name in ("a", "b", "c"):
        registry.register(name)
    registry.transition("b", S.CONNECTING)
    registry.transition("b", S.CONNECTED)
    assert registry.connected() == ["b"]
    assert sorted(registry.targets()) == ["a", "b", "c"]
    assert registry.unregister("a").target_id == "a"
    assert registry.unregister("a") is None
    registry.clear()
    assert len(registry) == 0
