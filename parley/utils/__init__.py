from .json_handlers import (
    load_config,
    is_jsonable,
    json_size,
    )
from .heartbeat_configs import HeartbeatConfig
from .request_configs import (
    RequestConfig,
    RateLimitConfig,
    DEFAULT_MAX_PAYLOAD_BYTES,
    )
from .engine_configs import EngineConfig
