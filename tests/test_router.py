"""
Tests for requests, responses, retries and fire-and-forget
"""
#pylint:disable=line-too-long
import asyncio
from dataclasses import replace

import pytest

from conftest import drop_type, make_peers
from parley import (
    ConnectionState,
    RateLimitConfig,
    RateLimitError,
    RemoteError,
    RequestConfig,
    RequestTimeoutError,
    SystemEvent,
    TargetNotFoundError,
    TransportError,
    ValidationError,
)
from parley.errors import ErrorCode
from parley.events import DisconnectReason
from parley.protocol.envelope import build_envelope, build_response


def _requests_sent(peers, message_type):
    return [w for t, w in peers.host_transport.sent if w["_type"] == message_type and w["_expectsResponse"]]


@pytest.mark.asyncio
async def test_request_returns_handler_result(peers):
    @peers.child.handle("calc")
    async def calc(payload):
        return {"result": payload["x"] + payload["y"]}

    await peers.host.connect("child")
    assert await peers.host.request("child", "calc", {"x": 5, "y": 3}, timeout=1.0) == {"result": 8}
    assert peers.host.router.pending_count() == 0
    assert peers.host.timers.active_count("child") == 0


@pytest.mark.asyncio
async def test_silent_remote_exhausts_retries(peers):
    @peers.child.handle("slow")
    async def slow(payload):
        await asyncio.sleep(10)

    timeouts = []
    peers.host.subscribe(SystemEvent.TIMEOUT, timeouts.append)
    await peers.host.connect("child")

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(RequestTimeoutError) as excinfo:
        await peers.host.request("child", "slow", {}, timeout=0.1, retries=2)
    elapsed = loop.time() - started

    assert excinfo.value.attempts == 3
    assert excinfo.value.code is ErrorCode.TIMEOUT_RETRIES_EXHAUSTED
    assert 0.28 <= elapsed < 0.6
    sent = _requests_sent(peers, "slow")
    assert len(sent) == 3
    # every attempt travels under its own id
    assert len({w["_id"] for w in sent}) == 3
    assert len(timeouts) == 1
    assert peers.host.router.pending_count() == 0


@pytest.mark.asyncio
async def test_single_attempt_timeout_code(peers):
    await peers.host.connect("child")
    peers.host_transport.add_filter(drop_type("lost"))
    with pytest.raises(RequestTimeoutError) as excinfo:
        await peers.host.request("child", "lost", {}, timeout=0.05)
    assert excinfo.value.attempts == 1
    assert excinfo.value.code is ErrorCode.TIMEOUT_NO_RESPONSE


@pytest.mark.asyncio
async def test_retry_succeeds_after_lost_attempt(peers):
    calls = []

    @peers.child.handle("calc")
    async def calc(payload):
        calls.append(payload)
        return {"result": 1}

    await peers.host.connect("child")
    dropped = []

    def drop_first(_target, wire):
        if wire["_type"] == "calc" and not dropped:
            dropped.append(wire["_id"])
            return True
        return False

    peers.host_transport.add_filter(drop_first)
    assert await peers.host.request("child", "calc", {}, timeout=0.05, retries=2) == {"result": 1}
    assert len(dropped) == 1
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_superseded_response_is_dropped_silently(peers):
    await peers.host.connect("child")
    peers.host_transport.add_filter(drop_type("calc"))

    request = asyncio.create_task(peers.host.request("child", "calc", {}, timeout=0.05, retries=1))
    await asyncio.sleep(0.07)
    # first attempt has been superseded by the retry
    first_id = peers.host_transport.dropped[0][1]["_id"]
    stale = build_response(build_envelope("calc", "x", {}), "https://child.example", {"result": "late"})
    stale = replace(stale, correlation_id=first_id)
    assert peers.host.router.handle_response("child", stale) is False

    with pytest.raises(RequestTimeoutError):
        await request


@pytest.mark.asyncio
async def test_unknown_or_foreign_responses_never_resolve(peers):
    @peers.child.handle("slow")
    async def slow(payload):
        await asyncio.sleep(10)

    await peers.host.connect("child")
    task = asyncio.create_task(peers.host.request("child", "slow", {}, timeout=1.0))
    await asyncio.sleep(0.01)
    request_id = _requests_sent(peers, "slow")[0]["_id"]

    unknown = build_response(build_envelope("slow", "x", {}), "https://child.example", {})
    assert peers.host.router.handle_response("child", unknown) is False

    # a response from a different target than the request's
    peers.host.register_target("other")
    foreign = build_response(build_envelope("slow", "x", {}), "https://child.example", {})
    foreign = replace(foreign, correlation_id=request_id)
    assert peers.host.router.handle_response("other", foreign) is False

    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_caller_cancellation_cleans_up(peers):
    @peers.child.handle("slow")
    async def slow(payload):
        await asyncio.sleep(10)

    await peers.host.connect("child")
    task = asyncio.create_task(peers.host.request("child", "slow", {}, timeout=1.0))
    await asyncio.sleep(0.01)
    assert peers.host.router.pending_count("child") == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert peers.host.router.pending_count() == 0
    assert peers.host.timers.active_count("child") == 0


@pytest.mark.asyncio
async def test_request_to_unconnected_targets_fails_immediately(peers):
    with pytest.raises(TargetNotFoundError) as excinfo:
        await peers.host.request("child", "calc", {})
    assert excinfo.value.code is ErrorCode.TARGET_NOT_CONNECTED
    with pytest.raises(TargetNotFoundError) as excinfo:
        await peers.host.request("nobody", "calc", {})
    assert excinfo.value.code is ErrorCode.TARGET_NOT_FOUND


@pytest.mark.asyncio
async def test_fire_and_forget(peers):
    received = []

    @peers.child.handle("notify")
    async def notify(payload, metadata):
        received.append((payload, metadata.target_id, metadata.expects_response))

    await peers.host.connect("child")
    assert await peers.host.request("child", "notify", {"n": 1}, expects_response=False) is None
    await asyncio.sleep(0.02)
    assert received == [({"n": 1}, "host", False)]
    # nothing came back
    assert not [w for _, w in peers.child_transport.sent if w["_type"] == "notify"]


@pytest.mark.asyncio
async def test_fire_and_forget_send_failure_raises_and_counts(peers):
    await peers.host.connect("child")
    peers.host_transport.fail_sends = True
    with pytest.raises(TransportError):
        peers.host.send("child", "notify", {})
    assert peers.host.get_record("child").consecutive_send_failures == 1
    peers.host_transport.fail_sends = False
    peers.host.send("child", "notify", {})
    assert peers.host.get_record("child").consecutive_send_failures == 0


@pytest.mark.asyncio
async def test_send_failures_escalate(peers):
    lost = []
    peers.host.subscribe(SystemEvent.CONNECTION_LOST, lost.append)
    await peers.host.connect("child")
    peers.host_transport.fail_sends = True
    for _ in range(3):
        with pytest.raises(TransportError):
            peers.host.send("child", "notify", {})
    assert [e.reason for e in lost] == [DisconnectReason.SEND_FAILURE.value]
    assert peers.host.get_state("child") is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_missing_handler_is_reported(peers):
    await peers.host.connect("child")
    with pytest.raises(RemoteError) as excinfo:
        await peers.host.request("child", "unknown_type", {})
    assert excinfo.value.code == ErrorCode.NO_HANDLER.value


@pytest.mark.asyncio
async def test_handler_exception_is_reported(peers):
    @peers.child.handle("explode")
    async def explode(payload):
        raise ValueError("bad input")

    errors = []
    peers.child.subscribe(SystemEvent.ERROR, errors.append)
    await peers.host.connect("child")
    with pytest.raises(RemoteError) as excinfo:
        await peers.host.request("child", "explode", {})
    assert excinfo.value.code == ErrorCode.HANDLER_ERROR.value
    assert "bad input" in excinfo.value.message
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_outbound_schema_validation(peers):
    await peers.host.connect("child")
    peers.host.register_message_type("calc", schema={
        "type": "object",
        "required": ["x", "y"],
        "properties": {"x": {"type": "number"}, "y": {"type": "number"}},
    })
    with pytest.raises(ValidationError) as excinfo:
        await peers.host.request("child", "calc", {"x": "five"})
    assert len(excinfo.value.errors) == 2
    assert not _requests_sent(peers, "calc")


@pytest.mark.asyncio
async def test_inbound_schema_validation(peers):
    @peers.child.handle("calc")
    async def calc(payload):
        return {"result": 0}

    peers.child.register_message_type("calc", schema={"type": "object", "required": ["x"]})
    await peers.host.connect("child")
    with pytest.raises(RemoteError) as excinfo:
        await peers.host.request("child", "calc", {})
    assert excinfo.value.code == ErrorCode.VALIDATION_SCHEMA_MISMATCH.value


@pytest.mark.asyncio
async def test_reserved_types_are_refused(peers):
    await peers.host.connect("child")
    for message_type in ("__parley_heartbeat_ping", "system:reboot"):
        with pytest.raises(ValidationError) as excinfo:
            await peers.host.request("child", message_type, {})
        assert excinfo.value.code is ErrorCode.VALIDATION_RESERVED_TYPE


@pytest.mark.asyncio
async def test_payload_size_limit():
    peers = make_peers(host_request=RequestConfig(max_payload_bytes=64, handshake_timeout_seconds=0.2))
    try:
        await peers.host.connect("child")
        with pytest.raises(ValidationError) as excinfo:
            peers.host.send("child", "blob", {"data": "x" * 100})
        assert excinfo.value.code is ErrorCode.VALIDATION_PAYLOAD_TOO_LARGE
    finally:
        peers.shutdown()


@pytest.mark.asyncio
async def test_rate_limit():
    peers = make_peers(host_kwargs={"rate_limit": RateLimitConfig(enabled=True, messages_per_second=3)})
    try:
        await peers.host.connect("child")
        for _ in range(3):
            peers.host.send("child", "notify", {})
        with pytest.raises(RateLimitError):
            peers.host.send("child", "notify", {})
    finally:
        peers.shutdown()


@pytest.mark.asyncio
async def test_message_type_defaults_apply(peers):
    await peers.host.connect("child")
    peers.host.register_message_type("lost", timeout=0.05, retries=1)
    peers.host_transport.add_filter(drop_type("lost"))
    with pytest.raises(RequestTimeoutError) as excinfo:
        await peers.host.request("child", "lost", {})
    assert excinfo.value.attempts == 2
    assert excinfo.value.timeout == 0.05


@pytest.mark.asyncio
async def test_broadcast(peers):
    assert peers.host.broadcast("news", {"headline": "none"}) == []

    received = []

    @peers.child.handle("news")
    async def news(payload):
        received.append(payload)

    await peers.host.connect("child")
    peers.host.register_target("elsewhere")
    assert peers.host.broadcast("news", {"headline": "hello"}) == ["child"]
    await asyncio.sleep(0.02)
    assert received == [{"headline": "hello"}]


@pytest.mark.asyncio
async def test_outbound_payload_is_sanitized(peers):
    received = []

    @peers.child.handle("echo")
    async def echo(payload):
        received.append(payload)
        return payload

    await peers.host.connect("child")
    result = await peers.host.request("child", "echo", {"ok": 1, "__proto__": {"x": 1}, "nan": float("nan")})
    assert received == [{"ok": 1, "nan": None}]
    assert result == {"ok": 1, "nan": None}
