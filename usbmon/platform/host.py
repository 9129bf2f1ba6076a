"""IUsbHost / IUsbConnection interfaces — abstraction over the host USB stack."""

from __future__ import annotations

from abc import ABC, abstractmethod

from usbmon.usb.device import UsbDevice, UsbInterface


class IUsbConnection(ABC):
    """One open native handle to a device.

    Implementations may block briefly; callers keep them off the event
    delivery thread.
    """

    @property
    @abstractmethod
    def file_descriptor(self) -> int: ...

    @property
    @abstractmethod
    def serial(self) -> str | None: ...

    @abstractmethod
    def raw_descriptors(self) -> bytes: ...

    @abstractmethod
    def claim_interface(self, intf: UsbInterface, force: bool = True) -> bool: ...

    @abstractmethod
    def release_interface(self, intf: UsbInterface) -> bool: ...

    @abstractmethod
    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        length: int,
        timeout: int = 0,
    ) -> bytes:
        """IN control transfer; returns the bytes actually transferred."""

    @abstractmethod
    def close(self) -> None: ...


class IUsbHost(ABC):
    @abstractmethod
    def list_devices(self) -> list[UsbDevice]:
        """Currently attached devices, unfiltered."""

    @abstractmethod
    def has_permission(self, device: UsbDevice) -> bool: ...

    @abstractmethod
    def request_permission(self, device: UsbDevice) -> None:
        """Ask for access to *device*.

        Returns immediately; the outcome arrives later as a
        ``PERMISSION_RESULT`` event.  Raises when the request cannot be
        issued at all.
        """

    @abstractmethod
    def open_device(self, device: UsbDevice) -> IUsbConnection:
        """Open a native handle.  Raises ``OSError`` on failure."""


class IEventSource(ABC):
    """Delivers hot-plug notifications onto the monitor's event bus."""

    @abstractmethod
    def start(self) -> bool: ...

    @abstractmethod
    def stop(self) -> None: ...
