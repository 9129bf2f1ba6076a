"""Tests for usbmon.platform.udev_monitor — fully mocked pyudev."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

from conftest import make_usb_device
from usbmon.core.event_bus import EventBus
from usbmon.core.events import EventType
from usbmon.platform.udev_monitor import UdevMonitor, device_from_properties


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_udev_device(action: str, device_node: str | None, properties: dict | None = None) -> MagicMock:
    dev = MagicMock()
    dev.action = action
    dev.device_node = device_node
    dev.properties = properties or {}
    return dev


def _run_once(mon: UdevMonitor, udev_device) -> MagicMock:
    """Drive ``_run`` with a monitor that yields *udev_device* then stops."""
    call_count = 0

    def fake_poll(timeout=1):
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return udev_device
        mon._running = False
        return None

    mock_monitor = MagicMock()
    mock_monitor.poll = fake_poll
    with patch("usbmon.platform.udev_monitor.pyudev") as mock_pyudev:
        mock_pyudev.Monitor.from_netlink.return_value = mock_monitor
        mon._running = True
        mon._run()
    return mock_monitor


def _collect(bus: EventBus) -> list:
    received = []
    bus.subscribe(EventType.DEVICE_DETACHED, received.append)
    return received


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestUdevMonitorStart:
    def test_start_creates_daemon_thread(self):
        mon = UdevMonitor(EventBus())
        mon._run = MagicMock()
        assert mon.start() is True
        assert mon._thread is not None
        assert mon._thread.daemon is True
        mon.stop()

    def test_start_idempotent(self):
        mon = UdevMonitor(EventBus())
        hold = threading.Event()
        mon._run = lambda: hold.wait(timeout=5)
        mon.start()
        thread1 = mon._thread
        mon.start()
        assert mon._thread is thread1
        assert mon.is_running
        hold.set()
        mon.stop()

    def test_stop_when_not_started(self):
        mon = UdevMonitor(EventBus())
        mon.stop()
        assert not mon.is_running


class TestUdevMonitorEvents:
    def test_filters_usb_devices(self):
        mon = UdevMonitor(EventBus())
        mock_monitor = _run_once(mon, None)
        mock_monitor.filter_by.assert_called_once_with(subsystem="usb", device_type="usb_device")

    def test_remove_publishes_cached_device(self):
        bus = EventBus()
        received = _collect(bus)
        cached = make_usb_device()
        lookup = MagicMock(return_value=cached)
        mon = UdevMonitor(bus, lookup=lookup)
        _run_once(mon, _make_udev_device("remove", cached.device_name))
        lookup.assert_called_once_with(cached.device_name)
        assert [e.data for e in received] == [cached]

    def test_remove_rebuilds_from_properties(self):
        bus = EventBus()
        received = _collect(bus)
        mon = UdevMonitor(bus, lookup=lambda node: None)
        props = {"DEVNAME": "/dev/bus/usb/001/009", "PRODUCT": "46d/825/12", "TYPE": "239/2/1"}
        _run_once(mon, _make_udev_device("remove", None, props))
        dev = received[0].data
        assert dev.device_name == "/dev/bus/usb/001/009"
        assert (dev.vendor_id, dev.product_id) == (0x046D, 0x0825)
        assert (dev.device_class, dev.device_subclass, dev.device_protocol) == (239, 2, 1)

    def test_add_is_not_published(self):
        bus = EventBus()
        received = _collect(bus)
        mon = UdevMonitor(bus)
        _run_once(mon, _make_udev_device("add", "/dev/bus/usb/001/009", {"PRODUCT": "1/2/3"}))
        assert received == []

    def test_remove_without_info_ignored(self):
        bus = EventBus()
        received = _collect(bus)
        mon = UdevMonitor(bus)
        _run_once(mon, _make_udev_device("remove", None, {}))
        assert received == []

    def test_handler_exception_does_not_crash(self):
        bus = EventBus()

        def bad_handler(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.DEVICE_DETACHED, bad_handler)
        mon = UdevMonitor(bus, lookup=MagicMock(side_effect=KeyError("x")))
        props = {"PRODUCT": "1/2/100"}
        _run_once(mon, _make_udev_device("remove", "/dev/bus/usb/001/002", props))  # should not raise


class TestDeviceFromProperties:
    def test_bad_product(self):
        assert device_from_properties(_make_udev_device("remove", "/x/1/2", {"PRODUCT": "zz"})) is None

    def test_missing_type_defaults_to_zero(self):
        dev = device_from_properties(_make_udev_device("remove", "/dev/bus/usb/002/003", {"PRODUCT": "1/2/102"}))
        assert dev.device_class == 0
        assert dev.version == "1.02"
