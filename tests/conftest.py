"""
Shared helpers: two engines ("host" and "child") wired over MemoryTransport.

The host registers the child explicitly; the child accepts the host's
handshake as an unregistered target. Heartbeats are off unless a test asks
for them, and every timing is short.
"""
#pylint:disable=line-too-long
from dataclasses import dataclass
from typing import Any, Callable, Optional
import asyncio

import pytest

from parley import EngineConfig, HeartbeatConfig, MemoryTransport, ProtocolEngine, RequestConfig

HOST_ORIGIN = "https://host.example"
CHILD_ORIGIN = "https://child.example"


def fast_heartbeat(**overrides: Any) -> HeartbeatConfig:
    params: dict[str, Any] = dict(
        enabled=True,
        interval_seconds=0.05,
        timeout_seconds=0.02,
        max_missed=3,
        max_failures=3,
        initial_delay_seconds=0.05,
    )
    params.update(overrides)
    return HeartbeatConfig(**params)


def no_heartbeat() -> HeartbeatConfig:
    return HeartbeatConfig(enabled=False)


def make_config(
    instance_id: str,
    origin: str,
    allowed_origins: list[str],
    heartbeat: Optional[HeartbeatConfig] = None,
    request: Optional[RequestConfig] = None,
    **kwargs: Any,
) -> EngineConfig:
    return EngineConfig(
        heartbeat=heartbeat if heartbeat is not None else no_heartbeat(),
        request=request if request is not None else RequestConfig(
            timeout_seconds=1.0,
            handshake_timeout_seconds=0.2,
            disconnect_timeout_seconds=0.2,
        ),
        origin=origin,
        allowed_origins=allowed_origins,
        instance_id=instance_id,
        **kwargs,
    )


@dataclass
class Peers:
    host: ProtocolEngine
    child: ProtocolEngine
    host_transport: MemoryTransport
    child_transport: MemoryTransport

    def shutdown(self) -> None:
        self.host.shutdown()
        self.child.shutdown()


def make_peers(
    host_heartbeat: Optional[HeartbeatConfig] = None,
    child_heartbeat: Optional[HeartbeatConfig] = None,
    host_request: Optional[RequestConfig] = None,
    child_request: Optional[RequestConfig] = None,
    host_allowed: Optional[list[str]] = None,
    child_allowed: Optional[list[str]] = None,
    host_kwargs: Optional[dict[str, Any]] = None,
    child_kwargs: Optional[dict[str, Any]] = None,
    register_child: bool = True,
) -> Peers:
    host_transport, child_transport = MemoryTransport.pair("host", "child")
    host = ProtocolEngine(
        host_transport,
        make_config("host", HOST_ORIGIN, host_allowed if host_allowed is not None else [CHILD_ORIGIN],
                    host_heartbeat, host_request, **(host_kwargs or {})),
        name="test.host",
    )
    child = ProtocolEngine(
        child_transport,
        make_config("child", CHILD_ORIGIN, child_allowed if child_allowed is not None else [HOST_ORIGIN],
                    child_heartbeat, child_request, **(child_kwargs or {})),
        name="test.child",
    )
    if register_child:
        host.register_target("child", origin=CHILD_ORIGIN)
    return Peers(host, child, host_transport, child_transport)


def drop_type(message_type: str) -> Callable[[str, dict], bool]:
    """Drop filter for one envelope type."""
    return lambda _target, wire: wire.get("_type") == message_type


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0, step: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step)
    return predicate()


@pytest.fixture
def peers():
    pair = make_peers()
    yield pair
    pair.shutdown()
