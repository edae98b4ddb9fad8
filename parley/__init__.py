from .errors import (
    ErrorCode,
    ParleyError,
    ProtocolError,
    HandshakeError,
    ConnectionLostError,
    RequestTimeoutError,
    TargetNotFoundError,
    DuplicateTargetError,
    IllegalTransitionError,
    ValidationError,
    RemoteError,
    TransportError,
    RateLimitError,
    EngineClosedError,
    )
from .events import (
    SystemEvent,
    DisconnectReason,
    EventBus,
    )
from .security import (
    SecurityGate,
    DefaultSecurityGate,
    )
from .protocol import (
    PROTOCOL_VERSION,
    Envelope,
    SchemaValidator,
    JsonSchemaValidator,
    )
from .transport import (
    Transport,
    MemoryTransport,
    )
from .utils import (
    EngineConfig,
    HeartbeatConfig,
    RequestConfig,
    RateLimitConfig,
    )
from .engine import (
    ProtocolEngine,
    MessageMetadata,
    ConnectionState,
    ConnectionRecord,
    )

__version__ = "0.1.0"
