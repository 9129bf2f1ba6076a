"""Stable device identity keys.

The key name is a ``#``-delimited string built from descriptor fields::

    vendorId#productId#class#subclass#protocol[#serialOverride]#[serial#]manufacturer#configCount#version#

Every delimiter is always emitted, even for empty fields, so field
boundaries cannot shift.  Ids are printed in decimal.

In the default (model-level) mode only vendor/product/class/subclass/
protocol are filled in: two physically distinct devices of the same model
share one key.  This is intended.  Pass ``serial`` for a serial-qualified
key, or ``extended=True`` to add the device's own serial number,
manufacturer, configuration count and version.

The integer key is a 32-bit signed polynomial hash of the key name
(``s[0]*31**(n-1) + ... + s[n-1]``), so it is identical across processes,
unlike the builtin :func:`hash`.  Other tooling matches devices across
runs by this value; the field order must not change.
"""

from __future__ import annotations

from usbmon.usb.device import UsbDevice

DELIMITER = "#"


def _text(value: object) -> str:
    return "" if value is None else str(value)


def device_key_name(
    device: UsbDevice | None,
    serial: str | None = None,
    extended: bool = False,
) -> str:
    """Return the identity key string for *device* (``""`` for ``None``)."""
    if device is None:
        return ""
    parts = [
        str(device.vendor_id),
        str(device.product_id),
        str(device.device_class),
        str(device.device_subclass),
        str(device.device_protocol),
    ]
    key = DELIMITER.join(parts)
    if serial:
        key += DELIMITER + serial
    key += DELIMITER
    if not serial:
        key += (_text(device.serial_number) if extended else "") + DELIMITER
    key += (_text(device.manufacturer_name) if extended else "") + DELIMITER
    key += (str(device.configuration_count) if extended else "") + DELIMITER
    key += (_text(device.version) if extended else "") + DELIMITER
    return key


def string_hash(text: str) -> int:
    """32-bit signed polynomial string hash over UTF-16 code units."""
    h = 0
    data = text.encode("utf-16-be")
    for i in range(0, len(data), 2):
        h = (31 * h + ((data[i] << 8) | data[i + 1])) & 0xFFFFFFFF
    return h - (1 << 32) if h & 0x80000000 else h


def device_key(
    device: UsbDevice | None,
    serial: str | None = None,
    extended: bool = False,
) -> int:
    """Return the integer identity key for *device* (``0`` for ``None``)."""
    if device is None:
        return 0
    return string_hash(device_key_name(device, serial, extended))
