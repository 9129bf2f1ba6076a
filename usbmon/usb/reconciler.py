"""ReconciliationLoop — periodic re-enumeration that makes up for lost attach events.

Each tick compares the number of enumerated devices and the number of
devices with permission against the previous tick.  If either grew, every
currently enumerated device is announced again.  This is count-based, not
a diff against a remembered set: an already-known device gets a duplicate
``on_attach`` whenever another device shows up in the same tick.
Detach is assumed reliable and is not polled.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from usbmon.core.worker import EventWorker, ScheduledTask
from usbmon.usb.device import UsbDevice
from usbmon.usb.permission_cache import PermissionCache

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_INTERVAL = 2.0


class ReconciliationLoop:
    def __init__(
        self,
        worker: EventWorker,
        enumerate_devices: Callable[[], list[UsbDevice]],
        cache: PermissionCache,
        check_permission: Callable[[UsbDevice], bool],
        on_attach: Callable[[UsbDevice], None],
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        interval: float = DEFAULT_INTERVAL,
    ):
        self._worker = worker
        self._enumerate = enumerate_devices
        self._cache = cache
        self._check_permission = check_permission
        self._on_attach = on_attach
        self.initial_delay = initial_delay
        self.interval = interval
        self._lock = threading.Lock()
        self._task: ScheduledTask | None = None
        self._generation = 0
        self._active = False
        self._device_count = 0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def device_count(self) -> int:
        return self._device_count

    def start(self) -> None:
        with self._lock:
            self._worker.cancel(self._task)
            self._generation += 1
            self._active = True
            self._device_count = 0
            self._task = self._worker.post_delayed(self.initial_delay, self._tick, self._generation)

    def stop(self) -> None:
        with self._lock:
            self._active = False
            self._generation += 1
            self._device_count = 0
            self._worker.cancel(self._task)
            self._task = None

    def reset(self) -> None:
        """Forget the last count so the next tick re-announces everything."""
        self._device_count = 0

    def tick(self, generation: int | None = None) -> None:
        """Run one reconciliation pass (worker thread).

        With *generation*, nothing is announced if the loop was stopped or
        restarted while the devices were being enumerated.
        """
        devices = self._enumerate()
        n = len(devices)
        before, after = self._cache.rebuild(devices, self._check_permission)
        logger.debug("Reconcile: %d device(s), %d→%d with permission", n, before, after)
        if generation is not None and generation != self._generation:
            return
        if n > self._device_count or after > before:
            self._device_count = n
            for device in devices:
                self._on_attach(device)

    def _tick(self, generation: int) -> None:
        if generation != self._generation:
            return
        try:
            self.tick(generation)
        except Exception:
            logger.exception("Reconciliation tick failed")
        finally:
            with self._lock:
                if self._active and generation == self._generation:
                    self._task = self._worker.post_delayed(self.interval, self._tick, generation)
