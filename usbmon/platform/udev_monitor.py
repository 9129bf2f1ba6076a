"""UdevMonitor — watches for USB device removal via pyudev."""

from __future__ import annotations

import logging
import threading

import pyudev

from usbmon.core.event_bus import EventBus
from usbmon.core.events import device_detached
from usbmon.platform.host import IEventSource
from usbmon.usb.device import UsbDevice

logger = logging.getLogger(__name__)


def device_from_properties(udev_device: "pyudev.Device") -> UsbDevice | None:
    """Rebuild a UsbDevice from the properties a ``remove`` uevent still carries.

    ``PRODUCT`` is ``"vid/pid/bcdDevice"`` in hex; ``TYPE`` is
    ``"class/subclass/protocol"`` in decimal.
    """
    node = udev_device.device_node or udev_device.properties.get("DEVNAME")
    product = udev_device.properties.get("PRODUCT")
    if not node or not product:
        return None
    try:
        vid, pid, bcd = (int(p, 16) for p in product.split("/"))
    except ValueError:
        return None
    cls = sub = proto = 0
    dev_type = udev_device.properties.get("TYPE")
    if dev_type:
        try:
            cls, sub, proto = (int(p) for p in dev_type.split("/"))
        except ValueError:
            pass
    return UsbDevice(
        device_name=node,
        vendor_id=vid,
        product_id=pid,
        device_class=cls,
        device_subclass=sub,
        device_protocol=proto,
        version="%x.%02x" % (bcd >> 8, bcd & 0xFF),
    )


class UdevMonitor(IEventSource):
    """Publishes ``DEVICE_DETACHED`` events for removed ``usb_device`` nodes.

    Parameters:
        event_bus: Channel the monitor is subscribed to.
        lookup:    Returns (and forgets) the UsbDevice the host handed out
                   for a device node, so listeners get the same object they
                   saw on attach.  When it returns None the device is
                   rebuilt from the uevent properties.
    """

    def __init__(self, event_bus: EventBus, lookup=None):
        self.event_bus = event_bus
        self.lookup = lookup
        self._thread: threading.Thread | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start the udev monitoring daemon thread.

        Returns:
            True if the thread is running.
        """
        if self._thread is not None and self._thread.is_alive():
            return True

        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True, name="usbmon-udev")
        self._thread.start()
        return True

    def stop(self) -> None:
        """Signal the monitoring loop to stop."""
        self._running = False
        if self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=2)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._running and self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self) -> None:
        """Main monitoring loop — runs in a daemon thread."""
        try:
            context = pyudev.Context()
            monitor = pyudev.Monitor.from_netlink(context)
            monitor.filter_by(subsystem="usb", device_type="usb_device")
            monitor.start()

            while self._running:
                udev_device = monitor.poll(timeout=1)
                if udev_device is None:
                    continue
                if udev_device.action == "remove":
                    self._handle_remove(udev_device)
                else:
                    logger.debug("udev %s: %s", udev_device.action, udev_device.device_node)

        except Exception as exc:
            logger.error("UdevMonitor error: %s", exc)

    def _handle_remove(self, udev_device: "pyudev.Device") -> None:
        node = udev_device.device_node or udev_device.properties.get("DEVNAME")
        device = None
        if self.lookup is not None and node:
            try:
                device = self.lookup(node)
            except Exception as exc:
                logger.debug("lookup(%s) failed: %s", node, exc)
        if device is None:
            device = device_from_properties(udev_device)
        if device is None:
            logger.debug("Ignoring remove without device info: %s", udev_device.sys_path)
            return
        logger.debug("udev remove: %s", device.device_name)
        self.event_bus.publish(device_detached(device))
