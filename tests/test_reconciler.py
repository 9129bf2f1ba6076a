"""Tests for usbmon.usb.reconciler.ReconciliationLoop."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from conftest import make_usb_device
from usbmon.core.worker import EventWorker
from usbmon.usb.permission_cache import PermissionCache
from usbmon.usb.reconciler import ReconciliationLoop


class Harness:
    def __init__(self, worker=None):
        self.devices = []
        self.permitted = set()
        self.attached = []
        self.cache = PermissionCache()
        self.loop = ReconciliationLoop(
            worker or MagicMock(),
            enumerate_devices=lambda: list(self.devices),
            cache=self.cache,
            check_permission=lambda d: d.device_name in self.permitted,
            on_attach=self.attached.append,
            initial_delay=0.01,
            interval=0.01,
        )


class TestTick:
    def test_first_tick_announces_all(self):
        h = Harness()
        a = make_usb_device(dev=1)
        h.devices = [a]
        h.loop.tick()
        assert h.attached == [a]
        assert h.loop.device_count == 1

    def test_stable_count_announces_nothing(self):
        h = Harness()
        h.devices = [make_usb_device(dev=1)]
        h.loop.tick()
        h.attached.clear()
        h.loop.tick()
        assert h.attached == []

    def test_new_device_reannounces_everything(self):
        h = Harness()
        a = make_usb_device(dev=1)
        b = make_usb_device(dev=2, vendor_id=0x1234)
        h.devices = [a]
        h.loop.tick()
        h.devices = [a, b]
        h.loop.tick()
        assert h.attached == [a, a, b]

    def test_permission_growth_reannounces(self):
        h = Harness()
        a = make_usb_device(dev=1)
        h.devices = [a]
        h.loop.tick()
        h.permitted.add(a.device_name)
        h.loop.tick()
        assert h.attached == [a, a]
        assert a in h.cache

    def test_shrinking_does_not_announce(self):
        h = Harness()
        a = make_usb_device(dev=1)
        b = make_usb_device(dev=2, vendor_id=0x1234)
        h.devices = [a, b]
        h.loop.tick()
        h.attached.clear()
        h.devices = [a]
        h.loop.tick()
        assert h.attached == []

    def test_reset_forces_reannounce(self):
        h = Harness()
        a = make_usb_device(dev=1)
        h.devices = [a]
        h.loop.tick()
        h.loop.reset()
        h.loop.tick()
        assert h.attached == [a, a]


class TestScheduling:
    def test_start_schedules_initial_tick(self):
        h = Harness()
        h.loop.start()
        h.loop._worker.post_delayed.assert_called_once()
        assert h.loop._worker.post_delayed.call_args[0][0] == 0.01
        assert h.loop.active

    def test_stop_cancels(self):
        h = Harness()
        h.loop.start()
        task = h.loop._task
        h.loop.stop()
        h.loop._worker.cancel.assert_called_with(task)
        assert not h.loop.active

    def test_stale_generation_is_ignored(self):
        h = Harness()
        h.devices = [make_usb_device()]
        h.loop.start()
        generation = h.loop._generation
        h.loop.stop()
        h.loop._tick(generation)
        assert h.attached == []

    def test_stop_during_enumeration_announces_nothing(self):
        h = Harness()
        a = make_usb_device()
        h.loop.start()
        generation = h.loop._generation

        def enumerate_then_stop():
            h.loop.stop()
            return [a]

        h.loop._enumerate = enumerate_then_stop
        h.loop._tick(generation)
        assert h.attached == []
        assert h.loop.device_count == 0

    def test_failing_enumeration_keeps_loop_alive(self):
        h = Harness()
        h.loop._enumerate = MagicMock(side_effect=OSError("udev"))
        h.loop.start()
        h.loop._worker.post_delayed.reset_mock()
        h.loop._tick(h.loop._generation)
        h.loop._worker.post_delayed.assert_called_once()

    def test_runs_on_real_worker(self):
        worker = EventWorker()
        worker.start()
        try:
            h = Harness(worker)
            h.devices = [make_usb_device()]
            h.loop.start()
            deadline = time.monotonic() + 2
            while not h.attached and time.monotonic() < deadline:
                time.sleep(0.01)
            h.loop.stop()
            assert len(h.attached) == 1
        finally:
            worker.quit()
