"""LinuxUsbHost — IUsbHost over sysfs/udev (pyudev) and usbfs (pyusb)."""

from __future__ import annotations

import errno
import logging
import os
import threading

import pyudev
import usb.core
import usb.util

from usbmon.core.event_bus import EventBus
from usbmon.core.events import permission_result
from usbmon.platform.host import IUsbConnection, IUsbHost
from usbmon.platform.subprocess_impl import SubprocessSystemAdapter
from usbmon.platform.system_adapter import ISystemAdapter
from usbmon.usb.device import UsbDevice, UsbInterface, parse_bus_dev

logger = logging.getLogger(__name__)

# usbfs exposes the device, configuration, interface and endpoint
# descriptors back to back when the node is read
RAW_DESCRIPTOR_LIMIT = 4096

PERMISSION_HELPER_TIMEOUT = 30.0


def _attr(device: "pyudev.Device", name: str) -> str | None:
    value = device.attributes.get(name)
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    value = value.strip()
    return value or None


def _attr_int(device: "pyudev.Device", name: str, base: int = 16, default: int = 0) -> int:
    value = _attr(device, name)
    if value is None:
        return default
    try:
        return int(value, base)
    except ValueError:
        return default


def _format_bcd(value: str | None) -> str | None:
    """``bcdDevice`` "0102" -> "1.02"."""
    if not value:
        return None
    try:
        raw = int(value, 16)
    except ValueError:
        return None
    return "%x.%02x" % (raw >> 8, raw & 0xFF)


def device_from_udev(context: "pyudev.Context", device: "pyudev.Device") -> UsbDevice | None:
    """Build a UsbDevice from a ``usb/usb_device`` udev node, or None without a node."""
    node = device.device_node
    if not node:
        busnum = _attr_int(device, "busnum", base=10)
        devnum = _attr_int(device, "devnum", base=10)
        if not busnum or not devnum:
            return None
        node = "/dev/bus/usb/%03d/%03d" % (busnum, devnum)

    interfaces: list[UsbInterface] = []
    prefix = device.sys_name + ":"
    for child in context.list_devices(subsystem="usb", DEVTYPE="usb_interface", parent=device):
        # only this device's own interfaces, not those of downstream hub ports
        if not child.sys_name.startswith(prefix):
            continue
        interfaces.append(UsbInterface(
            id=_attr_int(child, "bInterfaceNumber"),
            alternate_setting=_attr_int(child, "bAlternateSetting"),
            interface_class=_attr_int(child, "bInterfaceClass"),
            interface_subclass=_attr_int(child, "bInterfaceSubClass"),
            interface_protocol=_attr_int(child, "bInterfaceProtocol"),
            endpoint_count=_attr_int(child, "bNumEndpoints"),
        ))
    interfaces.sort(key=lambda i: (i.id, i.alternate_setting))

    return UsbDevice(
        device_name=node,
        vendor_id=_attr_int(device, "idVendor"),
        product_id=_attr_int(device, "idProduct"),
        device_class=_attr_int(device, "bDeviceClass"),
        device_subclass=_attr_int(device, "bDeviceSubClass"),
        device_protocol=_attr_int(device, "bDeviceProtocol"),
        serial_number=_attr(device, "serial"),
        manufacturer_name=_attr(device, "manufacturer"),
        product_name=_attr(device, "product"),
        version=_format_bcd(_attr(device, "bcdDevice")),
        configuration_count=_attr_int(device, "bNumConfigurations", base=10, default=1),
        interfaces=tuple(interfaces),
    )


class PyUsbConnection(IUsbConnection):
    """usbfs file descriptor plus the matching pyusb device.

    Raises ``OSError`` if the node cannot be opened or pyusb cannot find
    the device at its bus/address.
    """

    def __init__(self, device: UsbDevice):
        self._node = device.device_name
        self._lock = threading.Lock()
        self._detached: set[int] = set()
        self._serial: str | None = None
        self._serial_read = False
        self._fd = os.open(self._node, os.O_RDWR)
        bus, address = parse_bus_dev(self._node)
        try:
            self._usb = usb.core.find(bus=bus, address=address)
        except usb.core.NoBackendError as exc:
            os.close(self._fd)
            raise OSError(errno.ENOSYS, f"no libusb backend: {exc}") from exc
        except usb.core.USBError:
            os.close(self._fd)
            raise
        if self._usb is None:
            os.close(self._fd)
            raise OSError(errno.ENODEV, "device not found", self._node)

    @property
    def file_descriptor(self) -> int:
        return self._fd

    @property
    def serial(self) -> str | None:
        with self._lock:
            if not self._serial_read:
                self._serial_read = True
                index = getattr(self._usb, "iSerialNumber", 0)
                if index:
                    try:
                        self._serial = usb.util.get_string(self._usb, index)
                    except (ValueError, usb.core.USBError) as exc:
                        logger.debug("Could not read serial of %s: %s", self._node, exc)
            return self._serial

    def raw_descriptors(self) -> bytes:
        return os.pread(self._fd, RAW_DESCRIPTOR_LIMIT, 0)

    def claim_interface(self, intf: UsbInterface, force: bool = True) -> bool:
        try:
            if force and self._usb.is_kernel_driver_active(intf.id):
                self._usb.detach_kernel_driver(intf.id)
                self._detached.add(intf.id)
            usb.util.claim_interface(self._usb, intf.id)
            if intf.alternate_setting:
                self._usb.set_interface_altsetting(
                    interface=intf.id, alternate_setting=intf.alternate_setting,
                )
        except usb.core.USBError as exc:
            logger.warning("claim_interface(%d) failed on %s: %s", intf.id, self._node, exc)
            return False
        return True

    def release_interface(self, intf: UsbInterface) -> bool:
        try:
            usb.util.release_interface(self._usb, intf.id)
        except usb.core.USBError as exc:
            logger.warning("release_interface(%d) failed on %s: %s", intf.id, self._node, exc)
            return False
        if intf.id in self._detached:
            self._detached.discard(intf.id)
            try:
                self._usb.attach_kernel_driver(intf.id)
            except usb.core.USBError as exc:
                logger.debug("Could not reattach kernel driver to %s:%d: %s", self._node, intf.id, exc)
        return True

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        length: int,
        timeout: int = 0,
    ) -> bytes:
        data = self._usb.ctrl_transfer(request_type, request, value, index, length, timeout=timeout or None)
        return bytes(data)

    def close(self) -> None:
        try:
            usb.util.dispose_resources(self._usb)
        finally:
            os.close(self._fd)


class LinuxUsbHost(IUsbHost):
    """Enumerates ``usb/usb_device`` nodes and opens them through usbfs.

    ``UsbDevice`` objects are cached by device node so a device keeps the
    same object for as long as it stays attached.

    Args:
        event_bus: Where permission results are published.
        permission_helper: Optional command run to obtain access, e.g.
            ``["pkexec", "chmod", "a+rw", "{node}"]``; ``{node}`` is
            replaced with the usbfs path.
        system: Command runner for the helper.
    """

    def __init__(
        self,
        event_bus: EventBus,
        permission_helper: list[str] | None = None,
        system: ISystemAdapter | None = None,
        debug: bool = False,
    ):
        self.event_bus = event_bus
        self.permission_helper = list(permission_helper) if permission_helper else None
        self.system = system or SubprocessSystemAdapter(debug=debug)
        self.debug = debug
        self._context = pyudev.Context()
        self._devices: dict[str, UsbDevice] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Device cache
    # ------------------------------------------------------------------

    def lookup(self, node: str | None) -> UsbDevice | None:
        if not node:
            return None
        with self._lock:
            return self._devices.get(node)

    def forget(self, node: str | None) -> UsbDevice | None:
        if not node:
            return None
        with self._lock:
            return self._devices.pop(node, None)

    # ------------------------------------------------------------------
    # IUsbHost
    # ------------------------------------------------------------------

    def list_devices(self) -> list[UsbDevice]:
        found: dict[str, UsbDevice] = {}
        for udev_device in self._context.list_devices(subsystem="usb", DEVTYPE="usb_device"):
            try:
                device = device_from_udev(self._context, udev_device)
            except (OSError, KeyError) as exc:
                logger.debug("Skipping %s: %s", udev_device.sys_path, exc)
                continue
            if device is not None:
                found[device.device_name] = device

        with self._lock:
            for node, device in found.items():
                cached = self._devices.get(node)
                # same node with different descriptors means bus/dev was reused
                if cached is not None and cached == device:
                    found[node] = cached
            self._devices = found
            return list(found.values())

    def has_permission(self, device: UsbDevice) -> bool:
        return os.access(device.device_name, os.R_OK | os.W_OK)

    def request_permission(self, device: UsbDevice) -> None:
        node = device.device_name
        if not os.path.exists(node):
            raise FileNotFoundError(errno.ENOENT, "device node is gone", node)
        thread = threading.Thread(
            target=self._request_worker, args=(device,), daemon=True,
            name=f"usbmon-permission-{os.path.basename(node)}",
        )
        thread.start()

    def _request_worker(self, device: UsbDevice) -> None:
        if self.permission_helper and not self.has_permission(device):
            args = [arg.replace("{node}", device.device_name) for arg in self.permission_helper]
            result = self.system.run_command(args, timeout=PERMISSION_HELPER_TIMEOUT)
            if not result.ok:
                logger.warning(
                    "Permission helper failed for %s (rc=%d): %s",
                    device.device_name, result.returncode, result.stderr.strip(),
                )
        granted = self.has_permission(device)
        logger.debug("Permission for %s: %s", device.device_name, "granted" if granted else "denied")
        self.event_bus.publish(permission_result(device, granted))

    def open_device(self, device: UsbDevice) -> IUsbConnection:
        return PyUsbConnection(device)
