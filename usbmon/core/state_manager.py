"""DeviceStateManager — tracks the lifecycle state of each attached device."""

from __future__ import annotations

import logging
import threading

import usbmon.log  # registers TRACE level and logger.trace()
from usbmon.core.states import DeviceState
from usbmon.core.transitions import can_transition, next_state

logger = logging.getLogger(__name__)


class DeviceStateManager:
    """Maps device node -> DeviceState.

    Written from the worker thread only; reads are safe from any thread.
    """

    def __init__(self, debug: bool = False):
        self._states: dict[str, DeviceState] = {}
        self._lock = threading.Lock()
        self.debug = debug

    def get(self, key: str) -> DeviceState:
        with self._lock:
            return self._states.get(key, DeviceState.UNKNOWN)

    def transition(self, key: str, event_name: str) -> bool:
        with self._lock:
            current = self._states.get(key, DeviceState.UNKNOWN)
            if not can_transition(current, event_name):
                logger.trace("Ignored transition %r for %s from %s", event_name, key, current)  # type: ignore[attr-defined]
                return False
            new_state = next_state(current, event_name)
            self._states[key] = new_state
        if self.debug:
            logger.debug("Device %s: %s → %s (on %r)", key, current, new_state, event_name)
        return True

    def forget(self, key: str) -> None:
        """Drop *key*; a re-attached device starts again at UNKNOWN."""
        with self._lock:
            self._states.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def snapshot(self) -> dict[str, DeviceState]:
        with self._lock:
            return dict(self._states)
