"""PermissionBroker — live permission checks and asynchronous permission requests."""

from __future__ import annotations

import logging
from typing import Callable

from usbmon.core.events import Event, PermissionResultData
from usbmon.platform.host import IUsbHost
from usbmon.usb.device import UsbDevice
from usbmon.usb.permission_cache import PermissionCache

logger = logging.getLogger(__name__)


class PermissionBroker:
    """Issues permission requests and turns their outcomes into connect/cancel.

    Results are matched to requests by device identity only: two requests
    for the same device before the first answer are both satisfied by
    that answer.
    """

    def __init__(
        self,
        host: IUsbHost,
        cache: PermissionCache,
        on_granted: Callable[[UsbDevice], None],
        on_cancelled: Callable[[UsbDevice | None], None],
    ):
        self._host = host
        self._cache = cache
        self._on_granted = on_granted
        self._on_cancelled = on_cancelled

    def has_permission(self, device: UsbDevice | None) -> bool:
        """Live platform check; the result is recorded in the cache."""
        granted = device is not None and self._host.has_permission(device)
        return self._cache.update(device, granted)

    def request_permission(self, device: UsbDevice | None, registered: bool) -> bool:
        """Returns False when cancel was signalled instead of a request."""
        if not registered or device is None:
            self._on_cancelled(device)
            return False

        if self._host.has_permission(device):
            # Already granted: skip the round trip and connect directly
            self._on_granted(device)
            return True

        try:
            self._host.request_permission(device)
        except Exception as exc:
            # Platform quirks surface here as arbitrary exceptions
            logger.warning("Permission request for %s failed: %s", device.device_name, exc)
            self._on_cancelled(device)
            return False
        logger.debug("Permission requested for %s", device.device_name)
        return True

    def handle_result(self, event: Event) -> None:
        data: PermissionResultData = event.data
        if data.granted and data.device is not None:
            self._on_granted(data.device)
        else:
            self._on_cancelled(data.device)
