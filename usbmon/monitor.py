"""USBMonitor — device discovery, permission negotiation and connection lifecycle.

The monitor is the only component the application talks to.  Every
lifecycle transition (attach, connect, cancel, disconnect, detach) and
every reconciliation tick runs as a task on one worker thread, so they
never overlap.  That is what guarantees at most one native open per
identity and exactly one close per ControlBlock, without per-device locks.
The event source (permission results, detach notifications) only enqueues
work; it never opens or closes a device itself.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Iterable, Iterator, TypeVar

from usbmon.core.event_bus import EventBus
from usbmon.core.events import Event, EventType
from usbmon.core.state_manager import DeviceStateManager
from usbmon.core.states import DeviceState, MonitorState
from usbmon.core.worker import DEFAULT_MAX_PENDING, EventWorker
from usbmon.errors import InvalidStateError
from usbmon.listener import DeviceConnectListener
from usbmon.platform.host import IEventSource, IUsbHost
from usbmon.usb.connection_pool import ConnectionPool
from usbmon.usb.control_block import ControlBlock
from usbmon.usb.descriptors import DeviceInfo, read_device_info
from usbmon.usb.device import UsbDevice
from usbmon.usb.device_filter import DeviceFilter, select_devices
from usbmon.usb.permission_broker import PermissionBroker
from usbmon.usb.permission_cache import PermissionCache
from usbmon.usb.reconciler import DEFAULT_INITIAL_DELAY, DEFAULT_INTERVAL, ReconciliationLoop

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_DESTROY_TIMEOUT = 5.0

FilterArg = DeviceFilter | Iterable[DeviceFilter] | None


def _as_filter_list(filters: FilterArg) -> list[DeviceFilter]:
    if filters is None:
        return []
    if isinstance(filters, DeviceFilter):
        return [filters]
    return list(filters)


class USBMonitor:
    """Facade over the connection pool, permission cache, broker and reconciler.

    Args:
        host: Host USB stack adapter.
        listener: Receives attach/detach/connect/disconnect/cancel callbacks.
        event_bus: Channel the event source publishes on.  A private bus is
            created when omitted.
        event_source: Started on ``register()`` and stopped on ``unregister()``.
        filters: Initial device filters.
        initial_check_delay / check_interval: Reconciliation timing, seconds.
        extended_identity: Key the permission cache by the extended
            identity (serial, manufacturer, version) instead of the model.
    """

    def __init__(
        self,
        host: IUsbHost,
        listener: DeviceConnectListener,
        *,
        event_bus: EventBus | None = None,
        event_source: IEventSource | None = None,
        filters: FilterArg = None,
        initial_check_delay: float = DEFAULT_INITIAL_DELAY,
        check_interval: float = DEFAULT_INTERVAL,
        extended_identity: bool = True,
        max_pending: int = DEFAULT_MAX_PENDING,
        debug: bool = False,
    ):
        if listener is None:
            raise ValueError("DeviceConnectListener should not be None")
        self.host = host
        self.listener = listener
        self.event_bus = event_bus or EventBus()
        self.event_source = event_source
        self.debug = debug

        self._sync = threading.RLock()
        self._registered = False
        self._destroyed = False
        self._filters: list[DeviceFilter] = _as_filter_list(filters)
        self._filters_lock = threading.Lock()

        self._worker = EventWorker(name="usbmon-worker", max_pending=max_pending)
        self._states = DeviceStateManager(debug=debug)
        self._cache = PermissionCache(extended=extended_identity)
        self._pool = ConnectionPool(factory=lambda device: ControlBlock(self, device))
        self._broker = PermissionBroker(
            host,
            self._cache,
            on_granted=self._process_connect,
            on_cancelled=self._process_cancel,
        )
        self._reconciler = ReconciliationLoop(
            self._worker,
            enumerate_devices=self._list_filtered,
            cache=self._cache,
            check_permission=host.has_permission,
            on_attach=self._process_attach,
            initial_delay=initial_check_delay,
            interval=check_interval,
        )
        self._worker.start()
        logger.debug("USBMonitor created (host=%s)", type(host).__name__)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> MonitorState:
        if self._destroyed:
            return MonitorState.DESTROYED
        return MonitorState.REGISTERED if self._registered else MonitorState.UNREGISTERED

    @property
    def is_registered(self) -> bool:
        with self._sync:
            return not self._destroyed and self._registered

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def worker(self) -> EventWorker:
        return self._worker

    def register(self) -> None:
        """Start listening for events and reconciling.  Idempotent."""
        with self._sync:
            self._check_alive()
            if self._registered:
                return
            logger.info("register")
            self.event_bus.subscribe(EventType.PERMISSION_RESULT, self._on_permission_result)
            self.event_bus.subscribe(EventType.DEVICE_DETACHED, self._on_device_detached)
            if self.event_source is not None:
                self.event_source.start()
            self._registered = True
            self._reconciler.start()

    def unregister(self) -> None:
        """Stop event delivery and reconciliation.  Open ControlBlocks stay open."""
        with self._sync:
            self._check_alive()
            self._unregister()

    def _unregister(self) -> None:
        self._reconciler.stop()
        if not self._registered:
            return
        logger.info("unregister")
        self.event_bus.unsubscribe(EventType.PERMISSION_RESULT, self._on_permission_result)
        self.event_bus.unsubscribe(EventType.DEVICE_DETACHED, self._on_device_detached)
        if self.event_source is not None:
            try:
                self.event_source.stop()
            except Exception:
                logger.exception("Failed to stop event source")
        self._registered = False

    def destroy(self, timeout: float = DEFAULT_DESTROY_TIMEOUT) -> None:
        """Close every open ControlBlock once and stop the worker.  Irreversible.

        Teardown runs on the worker so it cannot interleave with a connect
        in progress; if the worker does not get to it within *timeout* the
        remaining blocks are closed on the calling thread.  A block that
        fails to close is logged and the rest are still closed.
        Calling ``destroy()`` again does nothing.
        """
        with self._sync:
            if self._destroyed:
                return
            logger.info("destroy")
            self._unregister()
            self._destroyed = True

        if self._worker.is_worker_thread():
            self._close_all()
        else:
            done = threading.Event()
            try:
                posted = self._worker.post(self._close_all, done)
            except Exception:
                posted = None
            if posted is None or not done.wait(timeout):
                logger.warning("destroy: worker busy, closing devices on caller thread")
                self._close_all()

        self._states.clear()
        self._cache.clear()
        self._worker.quit()

    def _close_all(self, done: threading.Event | None = None) -> None:
        try:
            for block in self._pool.snapshot():
                try:
                    block.close()
                except Exception:
                    logger.exception("destroy: failed to close %s", block)
            self._pool.clear()
        finally:
            if done is not None:
                done.set()

    def _check_alive(self) -> None:
        if self._destroyed:
            raise InvalidStateError("already destroyed")

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def set_device_filter(self, filters: FilterArg) -> None:
        self._check_alive()
        with self._filters_lock:
            self._filters = _as_filter_list(filters)

    def add_device_filter(self, filters: FilterArg) -> None:
        self._check_alive()
        with self._filters_lock:
            self._filters.extend(_as_filter_list(filters))

    def remove_device_filter(self, filters: FilterArg) -> None:
        self._check_alive()
        with self._filters_lock:
            for f in _as_filter_list(filters):
                try:
                    self._filters.remove(f)
                except ValueError:
                    pass

    @property
    def device_filters(self) -> list[DeviceFilter]:
        with self._filters_lock:
            return list(self._filters)

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def _list_filtered(self, filters: list[DeviceFilter] | None = None) -> list[UsbDevice]:
        if filters is None:
            filters = self.device_filters
        return select_devices(self.host.list_devices(), filters)

    def get_device_list(self, filters: FilterArg = None) -> list[UsbDevice]:
        """Attached devices selected by *filters* (default: the monitor's own)."""
        self._check_alive()
        return self._list_filtered(None if filters is None else _as_filter_list(filters))

    def get_device_count(self) -> int:
        self._check_alive()
        return len(self._list_filtered())

    def get_devices(self) -> Iterator[UsbDevice]:
        """All attached devices, ignoring filters."""
        self._check_alive()
        return iter(self.host.list_devices())

    def dump_devices(self) -> None:
        """Log every attached device with its interfaces."""
        devices = self.host.list_devices()
        if not devices:
            logger.info("no device")
            return
        for device in devices:
            interfaces = "".join(
                f"interface{i}:{intf}" for i, intf in enumerate(device.interfaces)
            )
            logger.info("key=%s:%s:%s", device.device_name, device, interfaces)

    def get_device_info(self, device: UsbDevice) -> DeviceInfo:
        """Vendor/product names, versions and serial of *device*.

        Opens a short-lived handle when permission is available.
        """
        self._check_alive()
        if device is not None and self.host.has_permission(device):
            try:
                connection = self.host.open_device(device)
            except OSError as exc:
                logger.debug("get_device_info: open failed for %s: %s", device.device_name, exc)
            else:
                try:
                    return read_device_info(device, connection)
                finally:
                    connection.close()
        return read_device_info(device)

    # ------------------------------------------------------------------
    # Permission and connection
    # ------------------------------------------------------------------

    def has_permission(self, device: UsbDevice | None) -> bool:
        """Live platform check; also refreshes the permission cache."""
        self._check_alive()
        return self._broker.has_permission(device)

    def request_permission(self, device: UsbDevice | None) -> bool:
        """Ask for access to *device*; connect when it is granted.

        Returns False when ``on_cancel`` was signalled instead (not
        registered, ``None`` device, or the request could not be issued).
        The outcome is reported through the listener either way.
        """
        logger.debug("request_permission: device=%s", device)
        with self._sync:
            self._check_alive()
            registered = self._registered
            if registered and device is not None:
                self._worker.post(self._states.transition, self._pool.key_for(device), "request")
            return self._broker.request_permission(device, registered)

    def open_device(self, device: UsbDevice, timeout: float = DEFAULT_OPEN_TIMEOUT) -> ControlBlock:
        """Open (or reuse) the pooled ControlBlock for *device* synchronously.

        Does not notify the listener.  Raises ``PermissionError`` without
        permission and ``OSError`` if the native open fails.
        """
        self._check_alive()
        if not self.has_permission(device):
            raise PermissionError("has no permission")
        block, _created = self._run_on_worker(self._pool.open_or_reuse, device, timeout=timeout)
        return block

    def open_independent(self, device: UsbDevice) -> ControlBlock:
        """Open a second handle to *device*, outside the pool.

        The block is not reported to the listener and is not closed by
        ``destroy()``; the caller must close it.
        """
        self._check_alive()
        if device is None:
            raise ValueError("device may already be removed")
        if not self.has_permission(device):
            raise PermissionError("has no permission")
        return ControlBlock(self, device, pooled=False)

    def control_blocks(self) -> list[ControlBlock]:
        return self._pool.snapshot()

    def get_control_block(self, device: UsbDevice) -> ControlBlock | None:
        return self._pool.get(device)

    def get_device_state(self, device: UsbDevice) -> DeviceState:
        return self._states.get(self._pool.key_for(device))

    def _run_on_worker(self, fn: Callable[..., T], *args: Any, timeout: float) -> T:
        if self._worker.is_worker_thread():
            return fn(*args)
        future: Future = Future()

        def task() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as exc:
                future.set_exception(exc)

        if self._worker.post(task) is None:
            raise InvalidStateError("worker stopped")
        return future.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Event source handlers (event delivery thread — enqueue only)
    # ------------------------------------------------------------------

    def _on_permission_result(self, event: Event) -> None:
        if self._destroyed:
            return
        self._broker.handle_result(event)

    def _on_device_detached(self, event: Event) -> None:
        if self._destroyed:
            return
        device = event.data
        if device is not None:
            self._worker.post(self._detach_task, device)

    # ------------------------------------------------------------------
    # Transitions (posted to the worker)
    # ------------------------------------------------------------------

    def _notify(self, name: str, *args: Any) -> None:
        try:
            getattr(self.listener, name)(*args)
        except Exception:
            logger.exception("Listener %s failed", name)

    def _process_connect(self, device: UsbDevice) -> None:
        if self._destroyed:
            return
        self._cache.update(device, True)
        self._worker.post(self._connect_task, device)

    def _process_cancel(self, device: UsbDevice | None) -> None:
        if self._destroyed:
            return
        logger.debug("process_cancel: %s", device)
        self._cache.update(device, False)
        self._worker.post(self._cancel_task, device)

    def _process_attach(self, device: UsbDevice) -> None:
        if self._destroyed or not self._registered:
            return
        self._worker.post(self._attach_task, device)

    def _attach_task(self, device: UsbDevice) -> None:
        # a tick already in flight when unregister() ran must not announce
        if self._destroyed or not self._registered:
            logger.debug("Dropped attach for %s: not registered", device.device_name)
            return
        self._notify("on_attach", device)

    def _connect_task(self, device: UsbDevice) -> None:
        if self._destroyed:
            return
        key = self._pool.key_for(device)
        try:
            block, created = self._pool.open_or_reuse(device)
        except OSError as exc:
            logger.warning("Could not open %s: %s", device.device_name, exc)
            self._cancel_task(device)
            return
        if self._destroyed:
            # destroy() ran while the native open was in flight; on_connect
            # was never sent, so neither is on_disconnect
            self._pool.discard(block)
            block.close(report=False)
            return
        self._states.transition(key, "connect")
        logger.info("Connected %s (create_new=%s)", device.device_name, created)
        self._notify("on_connect", device, block, created)

    def _cancel_task(self, device: UsbDevice | None) -> None:
        if device is not None:
            self._states.transition(self._pool.key_for(device), "cancel")
        self._notify("on_cancel", device)

    def _detach_task(self, device: UsbDevice) -> None:
        block = self._pool.pop(device)
        if block is not None:
            try:
                block.close()
            except Exception:
                logger.exception("Failed to close %s on detach", device.device_name)
        self._reconciler.reset()
        self._states.forget(self._pool.key_for(device))
        logger.info("Detached %s", device.device_name)
        self._notify("on_detach", device)

    def _on_block_closed(self, block: ControlBlock) -> None:
        """Called by a pooled ControlBlock once its handle is closed.

        A block closed by the application reports on the worker like every
        other callback; once the monitor is destroyed it reports inline.
        """
        inline = self._destroyed or self._worker.is_worker_thread()
        if inline or self._worker.post(self._disconnect_task, block) is None:
            self._disconnect_task(block)

    def _disconnect_task(self, block: ControlBlock) -> None:
        device = block.device
        if device is not None:
            self._states.transition(self._pool.key_for(device), "disconnect")
        self._pool.discard(block)
        self._notify("on_disconnect", device, block)

    def __repr__(self) -> str:
        return f"USBMonitor({self.state.name.lower()}, open={len(self._pool)})"
