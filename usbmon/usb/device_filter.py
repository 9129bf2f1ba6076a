"""Device filtering: include/exclude rules evaluated in list order."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from usbmon.usb.device import UsbDevice

_INT_FIELDS = ("vendor_id", "product_id", "device_class", "device_subclass", "device_protocol")
_STR_FIELDS = ("manufacturer", "product", "serial")


@dataclass(frozen=True)
class DeviceFilter:
    """Predicate over device descriptors.  ``None`` fields match anything.

    The class triple matches either the device itself or any of its
    interfaces, so a UVC camera (device class 0xEF, interface class 0x0E)
    is selected by ``DeviceFilter(device_class=0x0E)``.
    """

    vendor_id: int | None = None
    product_id: int | None = None
    device_class: int | None = None
    device_subclass: int | None = None
    device_protocol: int | None = None
    manufacturer: str | None = None
    product: str | None = None
    serial: str | None = None
    is_exclude: bool = False

    def _matches_class(self, cls: int, subclass: int, protocol: int) -> bool:
        if self.device_class is not None and self.device_class != cls:
            return False
        if self.device_subclass is not None and self.device_subclass != subclass:
            return False
        if self.device_protocol is not None and self.device_protocol != protocol:
            return False
        return True

    def matches(self, device: UsbDevice | None) -> bool:
        if device is None:
            return False
        if self.vendor_id is not None and device.vendor_id != self.vendor_id:
            return False
        if self.product_id is not None and device.product_id != self.product_id:
            return False
        if self.manufacturer is not None and device.manufacturer_name != self.manufacturer:
            return False
        if self.product is not None and device.product_name != self.product:
            return False
        if self.serial is not None and device.serial_number != self.serial:
            return False

        if self._matches_class(device.device_class, device.device_subclass, device.device_protocol):
            return True
        return any(
            self._matches_class(intf.interface_class, intf.interface_subclass, intf.interface_protocol)
            for intf in device.interfaces
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DeviceFilter":
        """Build a filter from a config mapping.

        Integer fields accept ints or strings in any base (``"0x046d"``).
        Raises ``ValueError`` on unknown keys or bad values.
        """
        unknown = set(raw) - set(_INT_FIELDS) - set(_STR_FIELDS) - {"is_exclude", "exclude"}
        if unknown:
            raise ValueError(f"Unknown filter keys: {', '.join(sorted(unknown))}")

        kwargs: dict[str, Any] = {}
        for name in _INT_FIELDS:
            value = raw.get(name)
            if value is None:
                continue
            try:
                kwargs[name] = int(value, 0) if isinstance(value, str) else int(value)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid filter '{name}': {value!r}")
        for name in _STR_FIELDS:
            value = raw.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"Invalid filter '{name}': must be a string")
            kwargs[name] = value

        exclude = raw.get("is_exclude", raw.get("exclude", False))
        if not isinstance(exclude, bool):
            raise ValueError("Invalid filter 'is_exclude': must be boolean")
        kwargs["is_exclude"] = exclude
        return cls(**kwargs)


def load_filters(raw_filters: Iterable[dict[str, Any]] | None) -> list[DeviceFilter]:
    """Convert a list of config mappings to filters, preserving order."""
    return [DeviceFilter.from_dict(raw) for raw in (raw_filters or [])]


def is_selected(device: UsbDevice, filters: list[DeviceFilter | None] | None) -> bool:
    """First matching filter decides; no filters selects everything."""
    if not filters:
        return True
    for f in filters:
        if f is not None and f.matches(device):
            return not f.is_exclude
    return False


def select_devices(
    devices: Iterable[UsbDevice],
    filters: list[DeviceFilter | None] | None,
) -> list[UsbDevice]:
    return [device for device in devices if is_selected(device, filters)]
