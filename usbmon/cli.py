#!/usr/bin/env python3
"""
usbmon CLI entry point
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import traceback

from usbmon.__version__ import __version__
from usbmon.core.states import DeviceState
from usbmon.listener import DeviceConnectListener
from usbmon.log import setup_logging
from usbmon.usb.identity import device_key, device_key_name

logger = logging.getLogger(__name__)


class LoggingListener(DeviceConnectListener):
    """Logs every lifecycle callback; optionally asks for permission on attach."""

    def __init__(self, auto_request: bool = False):
        self.auto_request = auto_request
        self.monitor = None

    def on_attach(self, device) -> None:
        logger.info("attach: %s", device)
        monitor = self.monitor
        if not self.auto_request or monitor is None or monitor.destroyed:
            return
        if monitor.get_device_state(device) in (DeviceState.CONNECTED, DeviceState.PENDING_PERMISSION):
            return
        monitor.request_permission(device)

    def on_detach(self, device) -> None:
        logger.info("detach: %s", device)

    def on_connect(self, device, ctrl_block, create_new) -> None:
        logger.info(
            "connect: %s manufacturer=%r product=%r serial=%r new=%s",
            device, ctrl_block.manufacturer, ctrl_block.product_name, ctrl_block.serial, create_new,
        )

    def on_disconnect(self, device, ctrl_block) -> None:
        logger.info("disconnect: %s", device if device is not None else ctrl_block)

    def on_cancel(self, device) -> None:
        logger.info("cancel: %s", device)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='usbmon',
        description='USB device monitor - permission negotiation and connection lifecycle',
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug mode with verbose logging'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to config file (default: ~/.config/usbmon/config.json)'
    )
    parser.add_argument(
        '--logfile',
        type=str,
        default=None,
        help='Path to log file (default: ~/.usbmon.log)'
    )
    parser.add_argument(
        '--list',
        action='store_true',
        help='Print attached devices that match the filters and exit'
    )
    parser.add_argument(
        '--request',
        action='store_true',
        help='Request permission for every attached matching device'
    )
    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s ' + __version__
    )
    return parser


def print_devices(devices, out=None) -> None:
    out = out or sys.stdout
    if not devices:
        print("no device", file=out)
        return
    for device in devices:
        print(
            f"{device.device_name}  {device.vendor_id:04x}:{device.product_id:04x}  "
            f"key={device_key(device)}  {device_key_name(device, extended=True)}",
            file=out,
        )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for usbmon"""
    args = build_parser().parse_args(argv)

    log = setup_logging(debug=args.debug, log_file=args.logfile)

    log.info("=" * 60)
    log.info("usbmon started (version %s)", __version__)
    log.info("Debug mode: %s", args.debug)
    log.info("PID: %d", os.getpid())
    log.info("=" * 60)

    # Import after args parsing to avoid import-time side effects
    from usbmon.config import load_config, monitor_options
    from usbmon.core.event_bus import EventBus
    from usbmon.monitor import USBMonitor
    from usbmon.platform.linux_host import LinuxUsbHost
    from usbmon.platform.udev_monitor import UdevMonitor

    try:
        log.debug("Loading config from: %s", args.config or 'default')
        config = load_config(args.config, args.debug)
    except Exception as e:
        log.error("Failed to load config: %s", e)
        log.debug(traceback.format_exc())
        return 1

    if args.debug:
        config['debug'] = True

    exit_reason = None
    monitor = None
    stop = threading.Event()

    try:
        bus = EventBus()
        host = LinuxUsbHost(bus, permission_helper=config['permission_helper'], debug=config['debug'])
        listener = LoggingListener(auto_request=config['auto_request_permission'])
        monitor = USBMonitor(
            host,
            listener,
            event_bus=bus,
            event_source=UdevMonitor(bus, lookup=host.forget),
            **monitor_options(config),
        )
        listener.monitor = monitor

        if args.list:
            print_devices(monitor.get_device_list())
            exit_reason = "Listed devices"
            return 0

        def signal_handler(signum: int, frame) -> None:
            nonlocal exit_reason
            exit_reason = f"Signal {signal.Signals(signum).name} (code {signum})"
            log.info("Received %s, shutting down...", signal.Signals(signum).name)
            stop.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        monitor.register()
        if args.request:
            for device in monitor.get_device_list():
                monitor.request_permission(device)

        log.info("Monitoring USB devices...")
        while not stop.wait(1.0):
            pass
        return 0

    except KeyboardInterrupt:
        exit_reason = "Keyboard interrupt (Ctrl+C)"
        return 0

    except PermissionError as e:
        exit_reason = f"Permission denied: {e}"
        log.error("Permission error: %s", e)
        log.error("Add a udev rule granting access to /dev/bus/usb (see config/99-usbmon.rules).")
        log.debug(traceback.format_exc())
        return 1

    except OSError as e:
        exit_reason = f"OS error: {e}"
        log.error("OS error: %s", e)
        log.debug(traceback.format_exc())
        return 1

    except Exception as e:
        exit_reason = f"Unhandled exception: {type(e).__name__}: {e}"
        log.error("Unhandled error: %s", e)
        log.debug(traceback.format_exc())
        return 1

    finally:
        if monitor is not None:
            monitor.destroy()
        if exit_reason:
            log.info("Exit reason: %s", exit_reason)
        log.info("usbmon shutdown")


if __name__ == '__main__':
    sys.exit(main())
