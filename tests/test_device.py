"""Tests for usbmon.usb.device."""

from __future__ import annotations

from usbmon.usb.device import UsbDevice, UsbInterface, parse_bus_dev


def test_parse_bus_dev():
    assert parse_bus_dev("/dev/bus/usb/001/004") == (1, 4)


def test_parse_bus_dev_defaults():
    assert parse_bus_dev("") == (0, 0)
    assert parse_bus_dev(None) == (0, 0)
    assert parse_bus_dev("usb") == (0, 0)
    assert parse_bus_dev("/dev/bus/usb/abc/def") == (0, 0)


def test_device_id():
    dev = UsbDevice("/dev/bus/usb/002/017", 1, 2)
    assert dev.device_id == 2017


def test_interfaces_do_not_affect_equality():
    a = UsbDevice("/dev/bus/usb/001/002", 1, 2, interfaces=(UsbInterface(0),))
    b = UsbDevice("/dev/bus/usb/001/002", 1, 2)
    assert a == b
    assert a.interface_count == 1
    assert a.get_interface(0).id == 0
