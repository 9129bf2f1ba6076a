"""Domain-specific errors for usbmon."""


class UsbMonitorError(Exception):
    """Base error for usbmon."""


class InvalidStateError(UsbMonitorError, RuntimeError):
    """Raised when the monitor is used after ``destroy()``."""


class ResourceClosedError(UsbMonitorError, RuntimeError):
    """Raised when a closed ControlBlock is accessed."""
