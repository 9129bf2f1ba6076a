import signal
import threading

import pytest

from usbmon.core.event_bus import EventBus
from usbmon.listener import DeviceConnectListener
from usbmon.platform.host import IUsbConnection, IUsbHost
from usbmon.usb.device import UsbDevice, UsbInterface


def pytest_addoption(parser):
    parser.addoption(
        "--worker-watchdog",
        action="store",
        default="20",
        help="Timeout in seconds after which a test blocked on a worker thread is failed"
    )


@pytest.fixture(autouse=True)
def worker_watchdog(request):
    timeout = int(request.config.getoption('--worker-watchdog') or 20)

    def handler(signum, frame):
        names = ", ".join(t.name for t in threading.enumerate() if t is not threading.main_thread())
        pytest.fail(f"Worker watchdog triggered after {timeout}s (threads: {names})")

    old_handler = signal.signal(signal.SIGALRM, handler)
    signal.alarm(timeout)
    try:
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)


# ---------------------------------------------------------------------------
# In-memory host platform
# ---------------------------------------------------------------------------

# Standard device descriptor: USB 2.00, bcdDevice 1.02, string indices 1/2/3
DEVICE_DESCRIPTOR = bytes([
    18, 1, 0x00, 0x02, 0, 0, 0, 64,
    0x6D, 0x04, 0x25, 0x08, 0x02, 0x01,
    1, 2, 3, 1,
])


def string_descriptor(text: str) -> bytes:
    payload = text.encode("utf-16-le")
    return bytes([len(payload) + 2, 3]) + payload


class FakeConnection(IUsbConnection):
    """Records calls; ``strings`` maps descriptor index -> text."""

    def __init__(self, device, fd=3, descriptors=DEVICE_DESCRIPTOR, strings=None,
                 serial=None, close_error=None):
        self.device = device
        self._fd = fd
        self.descriptors = descriptors
        self.strings = strings or {}
        self._serial = serial
        self.close_error = close_error
        self.close_count = 0
        self.claimed = []
        self.released = []
        self.transfers = []

    @property
    def file_descriptor(self):
        return self._fd

    @property
    def serial(self):
        return self._serial

    def raw_descriptors(self):
        return self.descriptors

    def claim_interface(self, intf, force=True):
        self.claimed.append((intf.id, force))
        return True

    def release_interface(self, intf):
        self.released.append(intf.id)
        return True

    def control_transfer(self, request_type, request, value, index, length, timeout=0):
        self.transfers.append((request_type, request, value, index, length))
        string_index = value & 0xFF
        if string_index == 0:
            return bytes([4, 3, 0x09, 0x04])
        text = self.strings.get(string_index)
        if text is None:
            raise OSError("stall")
        return string_descriptor(text)

    def close(self):
        self.close_count += 1
        if self.close_error is not None:
            raise self.close_error


class FakeHost(IUsbHost):
    """Devices, permissions and open results are plain attributes.

    ``request_permission`` either raises ``request_error`` or records the
    request; tests answer it by publishing on ``event_bus``.
    """

    def __init__(self, event_bus=None):
        self.event_bus = event_bus or EventBus()
        self.devices = []
        self.permitted = set()
        self.requests = []
        self.request_error = None
        self.open_error = None
        self.close_errors = {}
        self.connections = []
        self.open_count = 0
        self._lock = threading.Lock()

    def list_devices(self):
        return list(self.devices)

    def has_permission(self, device):
        return device.device_name in self.permitted

    def request_permission(self, device):
        if self.request_error is not None:
            raise self.request_error
        self.requests.append(device)

    def forget(self, node):
        return None

    def open_device(self, device):
        with self._lock:
            self.open_count += 1
            if self.open_error is not None:
                raise self.open_error
            conn = FakeConnection(
                device,
                fd=100 + self.open_count,
                close_error=self.close_errors.get(device.device_name),
            )
            self.connections.append(conn)
            return conn


class RecordingListener(DeviceConnectListener):
    """Thread-safe log of callbacks as ``(name, device_name, extra)`` tuples."""

    def __init__(self):
        self.events = []
        self.blocks = []
        self._cond = threading.Condition()

    def _record(self, name, device, extra=None):
        with self._cond:
            self.events.append((name, device.device_name if device is not None else None, extra))
            self._cond.notify_all()

    def on_attach(self, device):
        self._record("attach", device)

    def on_detach(self, device):
        self._record("detach", device)

    def on_connect(self, device, ctrl_block, create_new):
        with self._cond:
            self.blocks.append(ctrl_block)
        self._record("connect", device, create_new)

    def on_disconnect(self, device, ctrl_block):
        self._record("disconnect", device)

    def on_cancel(self, device):
        self._record("cancel", device)

    def names(self):
        with self._cond:
            return [e[0] for e in self.events]

    def wait_for(self, name, count=1, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(
                lambda: sum(1 for e in self.events if e[0] == name) >= count, timeout,
            )


def make_usb_device(bus=1, dev=4, vendor_id=0x046D, product_id=0x0825, **kwargs):
    kwargs.setdefault("interfaces", (UsbInterface(id=0, interface_class=14, interface_subclass=1),))
    return UsbDevice(
        device_name="/dev/bus/usb/%03d/%03d" % (bus, dev),
        vendor_id=vendor_id,
        product_id=product_id,
        **kwargs,
    )


@pytest.fixture
def make_device():
    return make_usb_device


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def monitor(host, listener):
    from usbmon.monitor import USBMonitor

    mon = USBMonitor(
        host, listener, event_bus=host.event_bus,
        initial_check_delay=0.05, check_interval=0.05,
    )
    yield mon
    mon.destroy()
