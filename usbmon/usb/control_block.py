"""ControlBlock — exclusive owner of one open native device handle.

A block is created only once permission is confirmed, and is closed
exactly once.  After ``close()`` the instance is permanently invalid:
every accessor that touches the handle raises ``ResourceClosedError``.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import TYPE_CHECKING

from usbmon.errors import ResourceClosedError
from usbmon.platform.host import IUsbConnection
from usbmon.usb.descriptors import DeviceInfo, read_device_info
from usbmon.usb.device import UsbDevice, UsbInterface, parse_bus_dev
from usbmon.usb import identity

if TYPE_CHECKING:
    from usbmon.monitor import USBMonitor

logger = logging.getLogger(__name__)


class ControlBlock:
    """Open handle plus the interfaces fetched or claimed through it.

    ``pooled`` blocks belong to the monitor's connection pool: closing one
    reports ``on_disconnect`` and removes the pool entry.  Independent
    blocks (``USBMonitor.open_independent``) are the caller's to close and
    are never reported.
    """

    def __init__(self, monitor: "USBMonitor", device: UsbDevice, *, pooled: bool = True):
        if device is None:
            raise ValueError("device must not be None")
        self._weak_monitor = weakref.ref(monitor)
        self._weak_device = weakref.ref(device)
        self._pooled = pooled
        self._lock = threading.RLock()
        # interface id -> alternate setting -> interface
        self._interfaces: dict[int, dict[int, UsbInterface]] = {}
        self._key_name = identity.device_key_name(device)
        self._bus_num, self._dev_num = parse_bus_dev(device.device_name)

        connection = monitor.host.open_device(device)
        try:
            self._info: DeviceInfo = read_device_info(device, connection)
        except Exception:
            connection.close()
            raise
        self._connection: IUsbConnection | None = connection
        logger.info(
            "Opened %s (bus=%d, dev=%d, fd=%d)",
            device.device_name, self._bus_num, self._dev_num, connection.file_descriptor,
        )

    # ------------------------------------------------------------------
    # Device fields (tolerate a vanished device)
    # ------------------------------------------------------------------

    @property
    def monitor(self) -> "USBMonitor | None":
        return self._weak_monitor()

    @property
    def device(self) -> UsbDevice | None:
        return self._weak_device()

    @property
    def pooled(self) -> bool:
        return self._pooled

    @property
    def device_name(self) -> str:
        device = self._weak_device()
        return device.device_name if device is not None else ""

    @property
    def device_id(self) -> int:
        device = self._weak_device()
        return device.device_id if device is not None else 0

    @property
    def vendor_id(self) -> int:
        device = self._weak_device()
        return device.vendor_id if device is not None else 0

    @property
    def product_id(self) -> int:
        device = self._weak_device()
        return device.product_id if device is not None else 0

    @property
    def bus_num(self) -> int:
        return self._bus_num

    @property
    def dev_num(self) -> int:
        return self._dev_num

    @property
    def info(self) -> DeviceInfo:
        return self._info

    @property
    def usb_version(self) -> str | None:
        return self._info.usb_version

    @property
    def manufacturer(self) -> str | None:
        return self._info.manufacturer

    @property
    def product_name(self) -> str | None:
        return self._info.product

    @property
    def version(self) -> str | None:
        return self._info.version

    @property
    def serial(self) -> str | None:
        return self._info.serial

    # ------------------------------------------------------------------
    # Identity keys
    # ------------------------------------------------------------------

    def device_key_name(self, extended: bool = False) -> str:
        self._check_connection()
        return identity.device_key_name(self._weak_device(), extended=extended)

    def device_key(self, extended: bool = False) -> int:
        self._check_connection()
        return identity.device_key(self._weak_device(), extended=extended)

    def device_key_name_with_serial(self) -> str:
        """Key name qualified by the serial read when the block was opened."""
        self._check_connection()
        return identity.device_key_name(self._weak_device(), serial=self._info.serial)

    def device_key_with_serial(self) -> int:
        self._check_connection()
        return identity.device_key(self._weak_device(), serial=self._info.serial)

    # ------------------------------------------------------------------
    # Native handle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._connection is None

    @property
    def connection(self) -> IUsbConnection:
        with self._lock:
            return self._check_connection()

    @property
    def file_descriptor(self) -> int:
        with self._lock:
            return self._check_connection().file_descriptor

    def raw_descriptors(self) -> bytes:
        with self._lock:
            return self._check_connection().raw_descriptors()

    def get_interface(self, interface_id: int, alt_setting: int = 0) -> UsbInterface | None:
        """Resolve and cache the interface with *interface_id* / *alt_setting*.

        Returns ``None`` if the device has no such interface or is gone.
        """
        with self._lock:
            self._check_connection()
            alts = self._interfaces.setdefault(interface_id, {})
            intf = alts.get(alt_setting)
            if intf is None:
                device = self._weak_device()
                if device is not None:
                    for candidate in device.interfaces:
                        if candidate.id == interface_id and candidate.alternate_setting == alt_setting:
                            intf = candidate
                            break
                if intf is not None:
                    alts[alt_setting] = intf
                elif not alts:
                    del self._interfaces[interface_id]
            return intf

    def claim_interface(self, intf: UsbInterface, force: bool = True) -> bool:
        with self._lock:
            connection = self._check_connection()
            self._interfaces.setdefault(intf.id, {})[intf.alternate_setting] = intf
            return connection.claim_interface(intf, force)

    def release_interface(self, intf: UsbInterface) -> bool:
        with self._lock:
            connection = self._check_connection()
            alts = self._interfaces.get(intf.id)
            if alts is not None:
                alts.pop(intf.alternate_setting, None)
                if not alts:
                    del self._interfaces[intf.id]
            return connection.release_interface(intf)

    def close(self, report: bool = True) -> None:
        """Release interfaces, close the handle, report disconnect, leave the pool.

        With ``report=False`` a pooled block closes silently, like an
        independent one.  Only the first call does anything.  A failure releasing one
        interface is logged and the rest are still released; a failure
        closing the handle is raised after the block has been marked
        closed, reported and removed.
        """
        with self._lock:
            connection = self._connection
            if connection is None:
                return
            self._connection = None
            for alts in self._interfaces.values():
                for intf in alts.values():
                    try:
                        connection.release_interface(intf)
                    except OSError as exc:
                        logger.warning("release_interface(%d) failed on %s: %s", intf.id, self.device_name, exc)
            self._interfaces.clear()
            error: Exception | None = None
            try:
                connection.close()
            except Exception as exc:
                error = exc

        logger.info("Closed %s", self.device_name or self._key_name)
        monitor = self._weak_monitor()
        if report and self._pooled and monitor is not None:
            monitor._on_block_closed(self)
        if error is not None:
            raise error

    def _check_connection(self) -> IUsbConnection:
        connection = self._connection
        if connection is None:
            raise ResourceClosedError("already closed")
        return connection

    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ControlBlock):
            return self._key_name == other._key_name and self.device == other.device
        if isinstance(other, UsbDevice):
            return other == self.device
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._key_name)

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"ControlBlock({self.device_name!r}, {state})"
