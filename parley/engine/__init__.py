from .registry import (
    ConnectionState,
    ConnectionRecord,
    ConnectionRegistry,
    LEGAL_TRANSITIONS,
    )
from .timers import TimerArena
from .handshake import HandshakeCoordinator
from .heartbeat import HeartbeatMonitor, HeartbeatState
from .disconnect import DisconnectCoordinator
from .router import RequestRouter, PendingRequest
from .engine import ProtocolEngine, MessageMetadata
