"""
Aggregate configuration of a `ProtocolEngine`.
The json layout is the one of templates/engine_config.json:

    {
      "instance_id": ..., "origin": ..., "allowed_origins": [...],
      "accept_unregistered": true,
      "logger":     {...},   -> configure_logger
      "heartbeat":  {...},   -> HeartbeatConfig
      "requests":   {...},   -> RequestConfig
      "rate_limit": {...}    -> RateLimitConfig
    }
"""
#pylint:disable=line-too-long

from dataclasses import dataclass, field
from typing import Any, List, Optional
import uuid

from parley.settings import PARLEY_INSTANCE_ID, PARLEY_ORIGIN
from parley.utils.heartbeat_configs import HeartbeatConfig
from parley.utils.request_configs import RequestConfig, RateLimitConfig
from parley.utils.json_handlers import load_config


def default_instance_id() -> str:
    if PARLEY_INSTANCE_ID:
        return PARLEY_INSTANCE_ID
    return f"parley_{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class EngineConfig:
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    request: RequestConfig = field(default_factory=RequestConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    origin: str = PARLEY_ORIGIN
    allowed_origins: list[str] = field(default_factory=list)
    instance_id: str = field(default_factory=default_instance_id)
    accept_unregistered: bool = True
    logger: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.instance_id, str) or not self.instance_id:
            raise ValueError("The provided instance_id must be a non-empty string")
        if not all(isinstance(o, str) for o in self.allowed_origins):
            raise ValueError("The provided allowed_origins must be a list of strings")

    #pylint:disable=too-many-branches
    def merge_in(self, **kwargs) -> List[str]:
        all_problems = []
        for section, target in (
            ("heartbeat", self.heartbeat),
            ("requests", self.request),
            ("rate_limit", self.rate_limit),
        ):
            if section in kwargs:
                if not isinstance((z := kwargs[section]), dict):
                    all_problems.append(f"The provided {section} section was not an object. It was {type(z)}")
                else:
                    all_problems.extend(target.merge_in(**z))
        if "origin" in kwargs:
            if not isinstance((z := kwargs["origin"]), str):
                all_problems.append(f"The provided origin was not a string. It was {type(z)}")
            else:
                self.origin = z
        if "allowed_origins" in kwargs:
            if not isinstance((z := kwargs["allowed_origins"]), list) or not all(isinstance(o, str) for o in z):
                all_problems.append(f"The provided allowed_origins was not a list of strings. It was {z!r}")
            else:
                self.allowed_origins = list(z)
        if "instance_id" in kwargs:
            if not isinstance((z := kwargs["instance_id"]), str | None):
                all_problems.append(f"The provided instance_id was not an optional string. It was {type(z)}")
            elif z:
                self.instance_id = z
        if "accept_unregistered" in kwargs:
            if not isinstance((z := kwargs["accept_unregistered"]), bool):
                all_problems.append(f"The provided accept_unregistered was not a bool. It was {type(z)}")
            else:
                self.accept_unregistered = z
        if "logger" in kwargs:
            if not isinstance((z := kwargs["logger"]), dict | None):
                all_problems.append(f"The provided logger section was not an object. It was {type(z)}")
            else:
                self.logger = dict(z or {})
        return all_problems

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "EngineConfig":
        engine_config = cls()
        problems = engine_config.merge_in(**config)
        if problems:
            raise ValueError("Invalid engine configuration:\n  - " + "\n  - ".join(problems))
        return engine_config

    @classmethod
    def from_file(cls, config_path: Optional[str]) -> "EngineConfig":
        """Missing or unreadable files give the defaults, like `load_config`."""
        return cls.from_dict(load_config(config_path))
