"""ConnectionPool — at most one live ControlBlock per attached device."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from usbmon.usb.control_block import ControlBlock
from usbmon.usb.device import UsbDevice

logger = logging.getLogger(__name__)


class ConnectionPool:
    """Device node -> open ControlBlock.

    Entries are keyed by the device node, not by ``device_key``: two
    devices of the same model share an identity key but never a handle.

    Reads are safe from any thread.  ``open_or_reuse`` is only called from
    the monitor's worker (or with the worker otherwise excluded), which is
    what keeps a second native open for the same device from happening;
    the internal lock only keeps the mapping consistent for readers.
    """

    def __init__(self, factory: Callable[[UsbDevice], ControlBlock]):
        self._factory = factory
        self._blocks: dict[str, ControlBlock] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key_for(device: UsbDevice | None) -> str:
        return device.device_name if device is not None else ""

    def get(self, device: UsbDevice | None) -> ControlBlock | None:
        with self._lock:
            return self._blocks.get(self.key_for(device))

    def open_or_reuse(self, device: UsbDevice) -> tuple[ControlBlock, bool]:
        """Return ``(block, created)``.

        ``created`` is False when a live block for the device already
        existed and no native open happened.  Raises whatever the native
        open raises (``OSError``); nothing is inserted in that case.
        """
        key = self.key_for(device)
        with self._lock:
            block = self._blocks.get(key)
        if block is not None and not block.closed:
            return block, False
        block = self._factory(device)
        with self._lock:
            self._blocks[key] = block
        return block, True

    def pop(self, device: UsbDevice | None) -> ControlBlock | None:
        with self._lock:
            return self._blocks.pop(self.key_for(device), None)

    def discard(self, block: ControlBlock) -> bool:
        """Remove *block* if it is still the registered one."""
        with self._lock:
            for key, registered in self._blocks.items():
                if registered is block:
                    del self._blocks[key]
                    return True
        return False

    def snapshot(self) -> list[ControlBlock]:
        with self._lock:
            return list(self._blocks.values())

    def clear(self) -> None:
        with self._lock:
            self._blocks.clear()

    def __contains__(self, device: UsbDevice | None) -> bool:
        with self._lock:
            return self.key_for(device) in self._blocks

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)
