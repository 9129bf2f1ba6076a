"""Monitor and per-device lifecycle states."""

from __future__ import annotations

from enum import Enum, auto


class MonitorState(Enum):
    UNREGISTERED = auto()
    REGISTERED = auto()
    DESTROYED = auto()


class DeviceState(Enum):
    UNKNOWN = auto()
    PENDING_PERMISSION = auto()
    CONNECTED = auto()
    # End of one connection session; a new request starts the next one
    DISCONNECTED = auto()
