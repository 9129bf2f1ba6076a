"""PermissionCache — identity key -> weak reference to a device with granted access.

Presence means "permission was granted as of the last check".  Absence only
means "unknown": it is never read as a denial.  The reconciliation pass
rebuilds the whole cache instead of trusting old entries, so a device that
re-attached with a new object is not shadowed by a stale one.
"""

from __future__ import annotations

import threading
import weakref
from typing import Callable, Iterable

from usbmon.usb.device import UsbDevice
from usbmon.usb.identity import device_key


class PermissionCache:
    def __init__(self, extended: bool = True):
        self.extended = extended
        self._entries: dict[int, weakref.ref[UsbDevice]] = {}
        self._lock = threading.Lock()

    def key_for(self, device: UsbDevice | None) -> int:
        return device_key(device, extended=self.extended)

    def update(self, device: UsbDevice | None, granted: bool) -> bool:
        """Record the outcome of a permission check.  Returns *granted*."""
        key = self.key_for(device)
        with self._lock:
            if granted and device is not None:
                ref = self._entries.get(key)
                if ref is None or ref() is None:
                    self._entries[key] = weakref.ref(device)
            else:
                self._entries.pop(key, None)
        return granted

    def get(self, device: UsbDevice | None) -> UsbDevice | None:
        """Return the cached live device for *device*'s identity, if any."""
        with self._lock:
            ref = self._entries.get(self.key_for(device))
        return ref() if ref is not None else None

    def __contains__(self, device: UsbDevice | None) -> bool:
        with self._lock:
            return self.key_for(device) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def rebuild(
        self,
        devices: Iterable[UsbDevice],
        check: Callable[[UsbDevice], bool],
    ) -> tuple[int, int]:
        """Replace the contents with a fresh check of *devices*.

        Returns ``(count_before, count_after)``.  *check* runs outside the
        lock so readers are never held up by platform calls.
        """
        fresh: dict[int, weakref.ref[UsbDevice]] = {}
        for device in devices:
            if check(device):
                fresh.setdefault(self.key_for(device), weakref.ref(device))
        with self._lock:
            before = len(self._entries)
            self._entries = fresh
            return before, len(fresh)
