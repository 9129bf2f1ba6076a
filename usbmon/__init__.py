"""usbmon — USB device monitor with permission negotiation and connection pooling."""

from usbmon.__version__ import __version__

__all__ = ["__version__"]
