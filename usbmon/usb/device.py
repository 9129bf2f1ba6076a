"""Descriptor snapshots of attached USB devices.

A :class:`UsbDevice` is what the host platform hands out during
enumeration.  It is not owned by the monitor: the platform may invalidate
it at any time (physical removal), so anything that outlives an
enumeration call holds it through a :func:`weakref.ref` and tolerates a
``None`` resolve.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class UsbInterface:
    id: int
    alternate_setting: int = 0
    interface_class: int = 0
    interface_subclass: int = 0
    interface_protocol: int = 0
    endpoint_count: int = 0


@dataclass(frozen=True)
class UsbDevice:
    """Descriptor fields of one attached device.

    ``device_name`` is the usbfs node, e.g. ``/dev/bus/usb/001/004``.
    Optional strings are ``None`` when the device does not report them.
    """

    device_name: str
    vendor_id: int
    product_id: int
    device_class: int = 0
    device_subclass: int = 0
    device_protocol: int = 0
    serial_number: str | None = None
    manufacturer_name: str | None = None
    product_name: str | None = None
    version: str | None = None
    configuration_count: int = 1
    interfaces: tuple[UsbInterface, ...] = field(default=(), compare=False)

    @property
    def device_id(self) -> int:
        """Platform-unique id derived from bus and device numbers."""
        bus, dev = parse_bus_dev(self.device_name)
        return bus * 1000 + dev

    @property
    def interface_count(self) -> int:
        return len(self.interfaces)

    def get_interface(self, index: int) -> UsbInterface:
        return self.interfaces[index]

    def __str__(self) -> str:
        return (
            f"UsbDevice[{self.device_name} {self.vendor_id:04x}:{self.product_id:04x} "
            f"class={self.device_class}/{self.device_subclass}/{self.device_protocol}]"
        )


def parse_bus_dev(device_name: str | None) -> tuple[int, int]:
    """Return ``(bus, dev)`` from the last two path components, or ``(0, 0)``."""
    if not device_name:
        return 0, 0
    parts = [p for p in device_name.split(os.sep) if p]
    if len(parts) < 2:
        return 0, 0
    try:
        return int(parts[-2]), int(parts[-1])
    except ValueError:
        return 0, 0
