"""Tests for usbmon.cli — argument parsing, device listing, logging listener."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeHost, make_usb_device
from usbmon.__version__ import __version__
from usbmon.cli import LoggingListener, build_parser, main, print_devices
from usbmon.core.states import DeviceState
from usbmon.usb.identity import device_key


class TestParseArgs:
    """build_parser() returns expected Namespace for various flags."""

    def test_defaults_no_args(self):
        args = build_parser().parse_args([])
        assert args.debug is False
        assert args.list is False
        assert args.request is False
        assert args.config is None

    def test_flags(self):
        args = build_parser().parse_args(["--debug", "--list", "--config", "/tmp/c.json"])
        assert args.debug is True
        assert args.list is True
        assert args.config == "/tmp/c.json"

    def test_version_flag(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out


class TestPrintDevices:
    def test_no_devices(self, capsys):
        print_devices([])
        assert "no device" in capsys.readouterr().out

    def test_prints_key(self, capsys):
        dev = make_usb_device()
        print_devices([dev])
        out = capsys.readouterr().out
        assert dev.device_name in out
        assert "046d:0825" in out
        assert f"key={device_key(dev)}" in out


class TestMainList:
    def test_list_prints_filtered_devices_and_exits(self, tmp_path, capsys):
        cfg = tmp_path / "config.json"
        cfg.write_text('{"filters": [{"vendor_id": "0x1234"}]}')
        fake = FakeHost()
        fake.devices = [make_usb_device(vendor_id=0x1234), make_usb_device(dev=9, vendor_id=0x9999)]
        with patch("usbmon.platform.linux_host.LinuxUsbHost", return_value=fake), \
             patch("usbmon.platform.udev_monitor.UdevMonitor") as mock_source:
            rc = main(["--list", "--config", str(cfg), "--logfile", str(tmp_path / "usbmon.log")])
        assert rc == 0
        out = capsys.readouterr().out
        assert "1234:" in out
        assert "9999:" not in out
        mock_source.return_value.start.assert_not_called()

    def test_host_failure_returns_error(self, tmp_path):
        with patch("usbmon.platform.linux_host.LinuxUsbHost", side_effect=OSError("no udev")):
            rc = main(["--list", "--config", str(tmp_path / "none.json"),
                       "--logfile", str(tmp_path / "usbmon.log")])
        assert rc == 1


class TestLoggingListener:
    def test_auto_request_on_attach(self):
        monitor = MagicMock()
        monitor.destroyed = False
        monitor.get_device_state.return_value = DeviceState.UNKNOWN
        listener = LoggingListener(auto_request=True)
        listener.monitor = monitor
        dev = make_usb_device()
        listener.on_attach(dev)
        monitor.request_permission.assert_called_once_with(dev)

    def test_no_request_when_connected(self):
        monitor = MagicMock()
        monitor.destroyed = False
        monitor.get_device_state.return_value = DeviceState.CONNECTED
        listener = LoggingListener(auto_request=True)
        listener.monitor = monitor
        listener.on_attach(make_usb_device())
        monitor.request_permission.assert_not_called()

    def test_no_request_by_default(self):
        monitor = MagicMock()
        listener = LoggingListener()
        listener.monitor = monitor
        listener.on_attach(make_usb_device())
        monitor.request_permission.assert_not_called()

    def test_callbacks_log(self, caplog):
        caplog.set_level("INFO", logger="usbmon.cli")
        listener = LoggingListener()
        dev = make_usb_device()
        block = MagicMock()
        listener.on_connect(dev, block, True)
        listener.on_disconnect(None, block)
        listener.on_cancel(dev)
        listener.on_detach(dev)
        assert "connect:" in caplog.text
        assert "cancel:" in caplog.text
        assert "detach:" in caplog.text
