"""Device info: version strings, manufacturer/product/serial from string descriptors."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from usbmon.platform.host import IUsbConnection
from usbmon.usb.device import UsbDevice

logger = logging.getLogger(__name__)

USB_DIR_IN = 0x80
USB_TYPE_STANDARD = 0x00 << 5
USB_RECIP_DEVICE = 0x00
USB_REQ_STANDARD_DEVICE_GET = USB_DIR_IN | USB_TYPE_STANDARD | USB_RECIP_DEVICE  # 0x80
USB_REQ_GET_DESCRIPTOR = 0x06
USB_DT_STRING = 0x03
USB_DT_DEVICE_SIZE = 18

STRING_BUFFER_SIZE = 256

# Some devices answer a string request with the language id itself
# (0x0409 as UTF-16LE); treat that reply as garbage.
GARBAGE_STRING = "Љ"

# Offsets into the standard device descriptor
_BCD_USB = 2
_BCD_DEVICE = 12
_I_MANUFACTURER = 14
_I_PRODUCT = 15
_I_SERIAL = 16


@dataclass
class DeviceInfo:
    usb_version: str | None = None
    manufacturer: str | None = None
    product: str | None = None
    version: str | None = None
    serial: str | None = None

    def clear(self) -> None:
        self.usb_version = None
        self.manufacturer = None
        self.product = None
        self.version = None
        self.serial = None


def _bcd(desc: bytes, offset: int) -> str:
    return "%x.%02x" % (desc[offset + 1], desc[offset])


def read_language_ids(connection: IUsbConnection) -> list[int]:
    """Return the LANGIDs advertised in string descriptor 0."""
    data = connection.control_transfer(
        USB_REQ_STANDARD_DEVICE_GET,
        USB_REQ_GET_DESCRIPTOR,
        (USB_DT_STRING << 8) | 0,
        0,
        STRING_BUFFER_SIZE,
    )
    if len(data) < 4:
        return []
    count = (len(data) - 2) // 2
    return [data[2 + 2 * i] | (data[3 + 2 * i] << 8) for i in range(count)]


def read_string(connection: IUsbConnection, index: int, languages: list[int]) -> str | None:
    """Read string descriptor *index*, trying each language until one decodes cleanly."""
    if index <= 0:
        return None
    for lang in languages:
        try:
            data = connection.control_transfer(
                USB_REQ_STANDARD_DEVICE_GET,
                USB_REQ_GET_DESCRIPTOR,
                (USB_DT_STRING << 8) | index,
                lang,
                STRING_BUFFER_SIZE,
            )
        except OSError as exc:
            logger.debug("String descriptor %d (lang 0x%04x) failed: %s", index, lang, exc)
            continue
        n = len(data)
        # bLength must match the transfer and bDescriptorType must be STRING
        if n <= 2 or data[0] != n or data[1] != USB_DT_STRING:
            continue
        try:
            text = bytes(data[2:n]).decode("utf-16-le")
        except UnicodeDecodeError:
            continue
        if text != GARBAGE_STRING:
            return text
    return None


def read_device_info(
    device: UsbDevice | None,
    connection: IUsbConnection | None = None,
    info: DeviceInfo | None = None,
) -> DeviceInfo:
    """Fill *info* (or a new DeviceInfo) for *device*.

    Descriptor fields are used first.  With an open *connection* the gaps
    are filled from the raw device descriptor and string descriptors.
    Manufacturer and product fall back to the hex vendor/product id.
    """
    info = info if info is not None else DeviceInfo()
    info.clear()
    if device is None:
        return info

    info.manufacturer = device.manufacturer_name
    info.product = device.product_name
    info.serial = device.serial_number
    info.version = device.version

    if connection is not None:
        try:
            _fill_from_connection(info, connection)
        except OSError as exc:
            logger.warning("Could not read descriptors of %s: %s", device.device_name, exc)

    if not info.manufacturer:
        info.manufacturer = "%04x" % device.vendor_id
    if not info.product:
        info.product = "%04x" % device.product_id
    return info


def _fill_from_connection(info: DeviceInfo, connection: IUsbConnection) -> None:
    desc = connection.raw_descriptors()
    if len(desc) >= USB_DT_DEVICE_SIZE:
        if not info.usb_version:
            info.usb_version = _bcd(desc, _BCD_USB)
        if not info.version:
            info.version = _bcd(desc, _BCD_DEVICE)
    if not info.serial:
        info.serial = connection.serial

    if len(desc) < USB_DT_DEVICE_SIZE:
        return
    if info.manufacturer and info.product and info.serial:
        return

    languages = read_language_ids(connection)
    if not languages:
        return
    if not info.manufacturer:
        info.manufacturer = read_string(connection, desc[_I_MANUFACTURER], languages)
    if not info.product:
        info.product = read_string(connection, desc[_I_PRODUCT], languages)
    if not info.serial:
        info.serial = read_string(connection, desc[_I_SERIAL], languages)
