"""Connection state machine.

The transition function is pure: it maps ``(state, event)`` to the next state
and the effects the connection manager must carry out. It never touches a
socket, which keeps every legal path testable on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ConnectionState(str, Enum):
    """Phase of the broker link."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Event(str, Enum):
    """Inputs that drive the state machine."""

    CONNECT_REQUESTED = "connect_requested"
    REGISTRATION_FAILED = "registration_failed"
    SOCKET_OPENED = "socket_opened"
    ACK_RECEIVED = "ack_received"
    SOCKET_CLOSED = "socket_closed"
    SOCKET_ERROR = "socket_error"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    RETRY_DUE = "retry_due"
    DISCONNECT_REQUESTED = "disconnect_requested"
    HEARTBEAT_RECEIVED = "heartbeat_received"
    WORK_RECEIVED = "work_received"


class Effect(str, Enum):
    """Side effects requested by a transition."""

    ENSURE_IDENTITY = "ensure_identity"
    OPEN_SOCKET = "open_socket"
    REPORT_FAILURE = "report_failure"
    SEND_CONNECT_FRAME = "send_connect_frame"
    RESET_BACKOFF = "reset_backoff"
    ABANDON_WORK = "abandon_work"
    SCHEDULE_RETRY = "schedule_retry"
    CLOSE_SOCKET = "close_socket"
    ECHO_HEARTBEAT = "echo_heartbeat"
    DISPATCH_WORK = "dispatch_work"


@dataclass(frozen=True)
class Transition:
    state: ConnectionState
    effects: tuple[Effect, ...] = ()


class InvalidTransitionError(ValueError):
    """Raised for an event that is not legal in the current state."""

    def __init__(self, state: ConnectionState, event: Event):
        super().__init__(f"Event {event.value} is not valid in state {state.value}")
        self.state = state
        self.event = event


_LINK_LOST = (Event.SOCKET_CLOSED, Event.SOCKET_ERROR, Event.HEARTBEAT_TIMEOUT)


def transition(state: ConnectionState, event: Event, *, retry_enabled: bool = True) -> Transition:
    """Return the transition for event in state.

    Args:
        state: Current connection state
        event: Event that occurred
        retry_enabled: Whether a lost link should schedule a reconnect

    Raises:
        InvalidTransitionError: event is not legal in state
    """
    if event is Event.DISCONNECT_REQUESTED:
        return Transition(ConnectionState.DISCONNECTED, (Effect.CLOSE_SOCKET,))

    if state in (ConnectionState.IDLE, ConnectionState.DISCONNECTED):
        if event is Event.CONNECT_REQUESTED:
            return Transition(ConnectionState.CONNECTING, (Effect.ENSURE_IDENTITY, Effect.OPEN_SOCKET))
        if state is ConnectionState.DISCONNECTED and event is Event.RETRY_DUE:
            return Transition(ConnectionState.CONNECTING, (Effect.OPEN_SOCKET,))

    elif state is ConnectionState.CONNECTING:
        if event is Event.REGISTRATION_FAILED:
            return Transition(ConnectionState.IDLE, (Effect.REPORT_FAILURE,))
        if event is Event.SOCKET_OPENED:
            return Transition(ConnectionState.CONNECTING, (Effect.SEND_CONNECT_FRAME,))
        if event is Event.ACK_RECEIVED:
            return Transition(ConnectionState.CONNECTED, (Effect.RESET_BACKOFF,))

    elif state is ConnectionState.CONNECTED:
        if event is Event.HEARTBEAT_RECEIVED:
            return Transition(ConnectionState.CONNECTED, (Effect.ECHO_HEARTBEAT,))
        if event is Event.WORK_RECEIVED:
            return Transition(ConnectionState.CONNECTED, (Effect.DISPATCH_WORK,))

    if state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED) and event in _LINK_LOST:
        effects = (Effect.ABANDON_WORK, Effect.SCHEDULE_RETRY) if retry_enabled else (Effect.ABANDON_WORK,)
        return Transition(ConnectionState.DISCONNECTED, effects)

    raise InvalidTransitionError(state, event)
