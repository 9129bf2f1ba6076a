"""Per-device lifecycle transition rules."""

from __future__ import annotations

from usbmon.core.states import DeviceState


# Allowed transitions: {from_state: {event_name: to_state}}
TRANSITIONS: dict[DeviceState, dict[str, DeviceState]] = {
    DeviceState.UNKNOWN: {
        "request": DeviceState.PENDING_PERMISSION,
        "connect": DeviceState.CONNECTED,
        "cancel": DeviceState.UNKNOWN,
    },
    DeviceState.PENDING_PERMISSION: {
        "request": DeviceState.PENDING_PERMISSION,
        "connect": DeviceState.CONNECTED,
        "cancel": DeviceState.UNKNOWN,
    },
    DeviceState.CONNECTED: {
        "connect": DeviceState.CONNECTED,
        "disconnect": DeviceState.DISCONNECTED,
    },
    DeviceState.DISCONNECTED: {
        "request": DeviceState.PENDING_PERMISSION,
        "connect": DeviceState.CONNECTED,
        "cancel": DeviceState.DISCONNECTED,
    },
}


def can_transition(from_state: DeviceState, event_name: str) -> bool:
    return event_name in TRANSITIONS.get(from_state, {})


def next_state(from_state: DeviceState, event_name: str) -> DeviceState:
    try:
        return TRANSITIONS[from_state][event_name]
    except KeyError:
        raise ValueError(f"No transition from {from_state!r} on event {event_name!r}")
