"""Typed event definitions (dataclasses) for the inbound event channel."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from usbmon.usb.device import UsbDevice


class EventType(Enum):
    # Result of an asynchronous permission request
    PERMISSION_RESULT = auto()
    # Physical removal reported by the hot-plug source
    DEVICE_DETACHED = auto()


@dataclass
class Event:
    type: EventType
    data: Any
    timestamp: float = field(default_factory=time.time)


@dataclass
class PermissionResultData:
    device: UsbDevice | None
    granted: bool


def permission_result(device: UsbDevice | None, granted: bool) -> Event:
    return Event(EventType.PERMISSION_RESULT, PermissionResultData(device=device, granted=granted))


def device_detached(device: UsbDevice) -> Event:
    return Event(EventType.DEVICE_DETACHED, device)
