"""Tests for device lifecycle states and transitions."""

from __future__ import annotations

import pytest

from usbmon.core.state_manager import DeviceStateManager
from usbmon.core.states import DeviceState
from usbmon.core.transitions import can_transition, next_state


class TestTransitions:
    def test_request_from_unknown(self):
        assert next_state(DeviceState.UNKNOWN, "request") == DeviceState.PENDING_PERMISSION

    def test_connect_from_pending(self):
        assert next_state(DeviceState.PENDING_PERMISSION, "connect") == DeviceState.CONNECTED

    def test_cancel_from_pending(self):
        assert next_state(DeviceState.PENDING_PERMISSION, "cancel") == DeviceState.UNKNOWN

    def test_disconnect_only_from_connected(self):
        assert can_transition(DeviceState.CONNECTED, "disconnect")
        assert not can_transition(DeviceState.UNKNOWN, "disconnect")

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            next_state(DeviceState.UNKNOWN, "disconnect")


class TestDeviceStateManager:
    def test_default_unknown(self):
        sm = DeviceStateManager()
        assert sm.get("/dev/bus/usb/001/042") == DeviceState.UNKNOWN

    def test_full_cycle(self):
        sm = DeviceStateManager(debug=True)
        assert sm.transition("/dev/bus/usb/001/001", "request")
        assert sm.transition("/dev/bus/usb/001/001", "connect")
        assert sm.get("/dev/bus/usb/001/001") == DeviceState.CONNECTED
        assert sm.transition("/dev/bus/usb/001/001", "disconnect")
        assert sm.get("/dev/bus/usb/001/001") == DeviceState.DISCONNECTED

    def test_ignored_transition_keeps_state(self):
        sm = DeviceStateManager()
        sm.transition("/dev/bus/usb/001/001", "connect")
        assert sm.transition("/dev/bus/usb/001/001", "request") is False
        assert sm.get("/dev/bus/usb/001/001") == DeviceState.CONNECTED

    def test_forget_and_clear(self):
        sm = DeviceStateManager()
        sm.transition("/dev/bus/usb/001/001", "connect")
        sm.transition("/dev/bus/usb/001/002", "request")
        sm.forget("/dev/bus/usb/001/001")
        assert sm.get("/dev/bus/usb/001/001") == DeviceState.UNKNOWN
        assert sm.snapshot() == {"/dev/bus/usb/001/002": DeviceState.PENDING_PERMISSION}
        sm.clear()
        assert sm.snapshot() == {}
