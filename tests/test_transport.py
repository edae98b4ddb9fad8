"""
Tests for the in-process transport
"""
import asyncio

import pytest

from parley.errors import TransportError
from parley.transport.memory import MemoryTransport


@pytest.mark.asyncio
async def test_pair_delivers_copies_under_sender_id():
    a, b = MemoryTransport.pair("alpha", "beta")
    received = []
    b.on_receive(lambda source, wire: received.append((source, wire)))

    envelope = {"_type": "x", "payload": {"n": 1}}
    a.send("beta", envelope)
    # delivery happens on a later loop iteration
    assert received == []
    await asyncio.sleep(0)
    assert received == [("alpha", {"_type": "x", "payload": {"n": 1}})]
    assert received[0][1] is not envelope
    assert a.sent_types("beta") == ["x"]


@pytest.mark.asyncio
async def test_latency_delays_delivery():
    a, b = MemoryTransport.pair("alpha", "beta", latency=0.05)
    received = []
    b.on_receive(lambda source, wire: received.append(wire))
    a.send("beta", {"_type": "x"})
    await asyncio.sleep(0.01)
    assert received == []
    await asyncio.sleep(0.06)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_failure_injection():
    a, b = MemoryTransport.pair("alpha", "beta")
    received = []
    b.on_receive(lambda source, wire: received.append(wire))

    remove = a.add_filter(lambda target, wire: wire["_type"] == "lost")
    a.send("beta", {"_type": "lost"})
    a.send("beta", {"_type": "kept"})
    remove()
    a.send("beta", {"_type": "lost"})
    await asyncio.sleep(0)
    assert [w["_type"] for w in received] == ["kept", "lost"]
    assert [w["_type"] for _, w in a.dropped] == ["lost"]

    a.fail_sends = True
    with pytest.raises(TransportError):
        a.send("beta", {"_type": "x"})
    a.fail_sends = False

    a.sever("beta")
    assert not a.is_reachable("beta")
    with pytest.raises(TransportError):
        a.send("beta", {"_type": "x"})
    a.restore("beta")
    assert a.is_reachable("beta")


@pytest.mark.asyncio
async def test_unknown_target_and_unserializable_payload():
    a, _ = MemoryTransport.pair("alpha", "beta")
    with pytest.raises(TransportError):
        a.send("gamma", {"_type": "x"})
    with pytest.raises(TransportError):
        a.send("beta", {"_type": "x", "payload": {1, 2}})
    assert a.sent == []


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_delivery():
    a, b = MemoryTransport.pair("alpha", "beta")
    received = []

    def broken(source, wire):
        raise RuntimeError("boom")

    b.on_receive(broken)
    unsubscribe = b.on_receive(lambda source, wire: received.append(wire))
    a.send("beta", {"_type": "x"})
    await asyncio.sleep(0)
    assert len(received) == 1

    unsubscribe()
    a.send("beta", {"_type": "y"})
    await asyncio.sleep(0)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_closed_transport():
    a, b = MemoryTransport.pair("alpha", "beta")
    received = []
    b.on_receive(lambda source, wire: received.append(wire))
    a.send("beta", {"_type": "x"})
    b.close()
    await asyncio.sleep(0)
    assert received == []

    a.close()
    assert not a.is_reachable("beta")
    with pytest.raises(TransportError):
        a.send("beta", {"_type": "x"})


def test_send_without_loop_fails():
    a, _ = MemoryTransport.pair("alpha", "beta")
    with pytest.raises(TransportError):
        a.send("beta", {"_type": "x"})
