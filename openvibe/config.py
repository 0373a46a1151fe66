"""Configuration for the OpenVibe relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class OverflowPolicy(str, Enum):
    """What happens when a master's broadcast buffer is full."""

    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


class OrphanPolicy(str, Enum):
    """What happens to a master command when no slave is registered."""

    DROP = "drop"
    CLOSE = "close"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class RelayConfig:
    """Relay settings. Defaults match a bare ``openvibe-server`` start."""

    host: str = "0.0.0.0"
    port: int = 3000

    # Per-master broadcast buffer and per-slave command queue
    broadcast_capacity: int = 100
    command_capacity: int = 100

    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    orphan_policy: OrphanPolicy = OrphanPolicy.DROP

    log_frames: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.overflow_policy = _choice(OverflowPolicy, self.overflow_policy, "overflow_policy")
        self.orphan_policy = _choice(OrphanPolicy, self.orphan_policy, "orphan_policy")
        if self.broadcast_capacity < 1:
            raise ValueError("broadcast_capacity must be at least 1")
        if self.command_capacity < 1:
            raise ValueError("command_capacity must be at least 1")

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Build a config from environment variables."""
        return cls(
            host=os.environ.get("SERVER_HOST", "0.0.0.0"),
            port=_env_int("SERVER_PORT", 3000),
            broadcast_capacity=_env_int("OPENVIBE_BROADCAST_CAPACITY", 100),
            command_capacity=_env_int("OPENVIBE_COMMAND_CAPACITY", 100),
            overflow_policy=os.environ.get("OPENVIBE_OVERFLOW_POLICY", "drop_oldest"),
            orphan_policy=os.environ.get("OPENVIBE_ORPHAN_POLICY", "drop"),
            log_frames=_env_bool("OPENVIBE_LOG_FRAMES", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


def _choice(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown {field_name} '{value}'. "
            f"Choose from: {[m.value for m in enum_cls]}"
        ) from None
