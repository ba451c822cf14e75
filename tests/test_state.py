"""Tests for the connection state machine."""

import pytest

from sparecompute.state import (
    ConnectionState,
    Effect,
    Event,
    InvalidTransitionError,
    transition,
)


class TestConnectPath:
    """Idle -> Connecting -> Connected."""

    def test_connect_from_idle(self):
        result = transition(ConnectionState.IDLE, Event.CONNECT_REQUESTED)
        assert result.state is ConnectionState.CONNECTING
        assert result.effects == (Effect.ENSURE_IDENTITY, Effect.OPEN_SOCKET)

    def test_connect_from_disconnected(self):
        result = transition(ConnectionState.DISCONNECTED, Event.CONNECT_REQUESTED)
        assert result.state is ConnectionState.CONNECTING

    def test_socket_open_sends_connect_frame_but_stays_connecting(self):
        """Socket-open alone does not mean the broker accepted us."""
        result = transition(ConnectionState.CONNECTING, Event.SOCKET_OPENED)
        assert result.state is ConnectionState.CONNECTING
        assert result.effects == (Effect.SEND_CONNECT_FRAME,)

    def test_ack_completes_connection(self):
        result = transition(ConnectionState.CONNECTING, Event.ACK_RECEIVED)
        assert result.state is ConnectionState.CONNECTED
        assert Effect.RESET_BACKOFF in result.effects

    def test_registration_failure_returns_to_idle(self):
        result = transition(ConnectionState.CONNECTING, Event.REGISTRATION_FAILED)
        assert result.state is ConnectionState.IDLE
        assert result.effects == (Effect.REPORT_FAILURE,)


class TestLinkLoss:
    """Connected/Connecting -> Disconnected."""

    @pytest.mark.parametrize("event", [Event.SOCKET_CLOSED, Event.SOCKET_ERROR, Event.HEARTBEAT_TIMEOUT])
    @pytest.mark.parametrize("state", [ConnectionState.CONNECTING, ConnectionState.CONNECTED])
    def test_link_loss_schedules_retry(self, state, event):
        result = transition(state, event)
        assert result.state is ConnectionState.DISCONNECTED
        assert Effect.ABANDON_WORK in result.effects
        assert Effect.SCHEDULE_RETRY in result.effects

    def test_link_loss_without_retry(self):
        result = transition(ConnectionState.CONNECTED, Event.SOCKET_CLOSED, retry_enabled=False)
        assert result.state is ConnectionState.DISCONNECTED
        assert Effect.SCHEDULE_RETRY not in result.effects

    def test_retry_due_reconnects_without_registering(self):
        result = transition(ConnectionState.DISCONNECTED, Event.RETRY_DUE)
        assert result.state is ConnectionState.CONNECTING
        assert result.effects == (Effect.OPEN_SOCKET,)


class TestDisconnectRequest:
    @pytest.mark.parametrize("state", list(ConnectionState))
    def test_disconnect_from_any_state(self, state):
        result = transition(state, Event.DISCONNECT_REQUESTED)
        assert result.state is ConnectionState.DISCONNECTED
        assert result.effects == (Effect.CLOSE_SOCKET,)


class TestConnectedFrames:
    def test_heartbeat_echo(self):
        result = transition(ConnectionState.CONNECTED, Event.HEARTBEAT_RECEIVED)
        assert result.state is ConnectionState.CONNECTED
        assert result.effects == (Effect.ECHO_HEARTBEAT,)

    def test_work_dispatch(self):
        result = transition(ConnectionState.CONNECTED, Event.WORK_RECEIVED)
        assert result.effects == (Effect.DISPATCH_WORK,)


class TestInvalidTransitions:
    @pytest.mark.parametrize(
        "state,event",
        [
            (ConnectionState.IDLE, Event.ACK_RECEIVED),
            (ConnectionState.IDLE, Event.RETRY_DUE),
            (ConnectionState.IDLE, Event.SOCKET_CLOSED),
            (ConnectionState.CONNECTING, Event.WORK_RECEIVED),
            (ConnectionState.CONNECTING, Event.HEARTBEAT_RECEIVED),
            (ConnectionState.CONNECTED, Event.CONNECT_REQUESTED),
            (ConnectionState.CONNECTED, Event.ACK_RECEIVED),
            (ConnectionState.DISCONNECTED, Event.WORK_RECEIVED),
        ],
    )
    def test_illegal_pairs_raise(self, state, event):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(state, event)
        assert exc_info.value.state is state
        assert exc_info.value.event is event
