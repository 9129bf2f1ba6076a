"""DeviceConnectListener — callbacks the monitor delivers to the application.

Every callback runs on the monitor's worker thread.  A UI must re-dispatch
to its own thread before touching UI state.  A callback that raises is
logged; it does not affect other devices.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from usbmon.usb.device import UsbDevice

if TYPE_CHECKING:
    from usbmon.usb.control_block import ControlBlock


class DeviceConnectListener(ABC):
    @abstractmethod
    def on_attach(self, device: UsbDevice) -> None:
        """A matching device is attached (may repeat for a known device)."""

    @abstractmethod
    def on_detach(self, device: UsbDevice) -> None:
        """The device was removed; delivered after ``on_disconnect``."""

    @abstractmethod
    def on_connect(self, device: UsbDevice, ctrl_block: "ControlBlock", create_new: bool) -> None:
        """The device is open.  ``create_new`` is False when an existing block was reused."""

    @abstractmethod
    def on_disconnect(self, device: UsbDevice | None, ctrl_block: "ControlBlock") -> None:
        """*ctrl_block* has been closed (the device may already be gone)."""

    @abstractmethod
    def on_cancel(self, device: UsbDevice | None) -> None:
        """Permission was denied or could not be requested."""
