"""Connection manager: owns the broker socket and drives the state machine."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from sparecompute.config import AgentConfig
from sparecompute.dispatcher import InferenceDispatcher
from sparecompute.protocol import ProtocolError, encode_frame, parse_frame_with_prefix
from sparecompute.schemas import (
    ConnectedFrame,
    ConnectFrame,
    ConnectResult,
    HeartbeatFrame,
    InferenceRequestFrame,
    InferenceResponseFrame,
    PluginIdentity,
    WorkItem,
    WorkResult,
)
from sparecompute.state import ConnectionState, Effect, Event, InvalidTransitionError, transition

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Raised when the broker socket fails to open, send or receive."""

    def __init__(self, message: str, event: Event = Event.SOCKET_ERROR):
        super().__init__(message)
        self.event = event


class Transport(Protocol):
    """The subset of a websocket client connection the manager relies on."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]
IdentitySource = Callable[[], Awaitable[PluginIdentity]]

_SOCKET_ERRORS = (OSError, WebSocketException)

_FRAME_EVENTS = {
    ConnectedFrame: Event.ACK_RECEIVED,
    HeartbeatFrame: Event.HEARTBEAT_RECEIVED,
    InferenceRequestFrame: Event.WORK_RECEIVED,
}


async def websocket_connector(url: str) -> Transport:
    """Open a websocket client connection to the broker."""
    return await websockets.connect(url)


class Backoff:
    """Exponential reconnect delay with a cap and jitter."""

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, jitter: float = 0.25, factor: float = 2.0):
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self.factor = factor
        self.attempt = 0

    def next_delay(self) -> float:
        delay = min(self.initial * self.factor ** self.attempt, self.maximum)
        if delay < self.maximum:
            self.attempt += 1
        spread = delay * self.jitter
        return max(0.0, delay + random.uniform(-spread, spread))

    def reset(self) -> None:
        self.attempt = 0


class ConnectionManager:
    """Holds the single logical connection to the broker.

    All state lives on one event loop. Each inference request runs in its own
    task, so a slow provider never delays heartbeats or other requests.
    Sockets are numbered by generation: a result computed for a socket that
    has since been replaced or closed is discarded instead of sent.
    """

    def __init__(
        self,
        config: AgentConfig,
        dispatcher: InferenceDispatcher,
        identity_source: IdentitySource,
        connector: Connector | None = None,
    ):
        self.config = config
        self.dispatcher = dispatcher
        self._identity_source = identity_source
        self._connector = connector or websocket_connector
        self._backoff = Backoff(
            initial=config.reconnect_initial_delay,
            maximum=config.reconnect_max_delay,
            jitter=config.reconnect_jitter,
        )

        self._state = ConnectionState.IDLE
        self._identity: PluginIdentity | None = None
        self._transport: Transport | None = None
        self._frame_prefix = config.frame_prefix
        self._generation = 0
        self._connect_attempt = 0
        self._retry_enabled = False
        self._supervisor: asyncio.Task | None = None
        self._first_attempt: asyncio.Future | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _apply(self, event: Event) -> tuple[Effect, ...]:
        result = transition(self._state, event, retry_enabled=self._retry_enabled)
        if result.state is not self._state:
            logger.info(f"Connection {self._state.value} -> {result.state.value} ({event.value})")
        self._state = result.state
        return result.effects

    # --- Public contract ---

    async def connect(self) -> ConnectResult:
        """Connect to the broker and wait for the first attempt to settle.

        Returns immediately when a connection is already up or in progress.

        Raises:
            RegistrationError: no identity could be obtained; state is Idle.
            TransportError: the first attempt failed; a retry is scheduled.
        """
        if self._state is ConnectionState.CONNECTED:
            return ConnectResult(success=True, message="Already connected")
        if self._state is ConnectionState.CONNECTING:
            return ConnectResult(success=True, message="Already connecting")

        # A supervisor left over from a lost link may still be waiting to retry
        stale, self._supervisor = self._supervisor, None
        if stale is not None:
            stale.cancel()

        self._apply(Event.CONNECT_REQUESTED)
        self._connect_attempt += 1
        attempt = self._connect_attempt

        try:
            identity = await self._identity_source()
        except BaseException:
            if attempt == self._connect_attempt and self._state is ConnectionState.CONNECTING:
                self._apply(Event.REGISTRATION_FAILED)
            raise

        if attempt != self._connect_attempt or self._state is not ConnectionState.CONNECTING:
            return ConnectResult(success=False, error="Connection attempt was cancelled")

        self._identity = identity
        self._retry_enabled = True
        self._backoff.reset()
        self._first_attempt = asyncio.get_running_loop().create_future()
        self._supervisor = asyncio.create_task(self._supervise(), name="broker-connection")

        await self._first_attempt
        return ConnectResult(success=True, message="Connected to service")

    async def disconnect(self) -> ConnectResult:
        """Close the connection and suppress reconnects until connect()."""
        self._retry_enabled = False
        self._connect_attempt += 1
        self._generation += 1
        self._apply(Event.DISCONNECT_REQUESTED)

        supervisor, self._supervisor = self._supervisor, None
        transport, self._transport = self._transport, None
        self._settle(TransportError("Disconnected by request"))

        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
        if transport is not None:
            await self._close_quietly(transport)

        return ConnectResult(success=True, message="Disconnected from service")

    async def close(self) -> None:
        """Disconnect and cancel in-flight work. Used at process shutdown."""
        await self.disconnect()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- Connection loop ---

    def _settle(self, error: Exception | None = None) -> None:
        future = self._first_attempt
        if future is None or future.done():
            return
        if error is None:
            future.set_result(None)
        else:
            future.set_exception(error)

    async def _supervise(self) -> None:
        while True:
            try:
                await self._run_connection()
            except TransportError as e:
                logger.warning(f"Broker connection lost: {e}")
                effects = self._link_lost(e)
            except Exception as e:
                logger.error(f"Unexpected failure on broker connection: {e}", exc_info=True)
                effects = self._link_lost(TransportError(str(e) or e.__class__.__name__))

            if Effect.SCHEDULE_RETRY not in effects:
                return

            delay = self._backoff.next_delay()
            logger.info(f"Reconnecting in {delay:.2f}s")
            await asyncio.sleep(delay)
            self._apply(Event.RETRY_DUE)

    def _link_lost(self, error: TransportError) -> tuple[Effect, ...]:
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return ()
        effects = self._apply(error.event)
        if Effect.ABANDON_WORK in effects and self._tasks:
            logger.warning(f"Abandoning {len(self._tasks)} in-flight request(s)")
        self._settle(error)
        return effects

    async def _run_connection(self) -> None:
        """Open one socket and serve it until it fails. Always raises TransportError."""
        self._generation += 1
        generation = self._generation
        url = self.config.socket_url

        try:
            transport = await asyncio.wait_for(self._connector(url), self.config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out opening {url}") from e
        except TransportError:
            raise
        except _SOCKET_ERRORS as e:
            raise TransportError(f"Could not open {url}: {e}") from e

        self._transport = transport
        self._frame_prefix = self.config.frame_prefix
        deadline = asyncio.get_running_loop().time() + self.config.connect_timeout
        try:
            effects = self._apply(Event.SOCKET_OPENED)
            if Effect.SEND_CONNECT_FRAME in effects:
                await self._send(
                    ConnectFrame(
                        plugin_id=self._identity.plugin_id,
                        connection_token=self._identity.connection_token,
                    )
                )
            while True:
                raw = await self._receive(transport, deadline)
                await self._handle_raw(raw, generation)
        finally:
            if self._transport is transport:
                self._transport = None
            await self._close_quietly(transport)

    async def _receive(self, transport: Transport, ack_deadline: float) -> str | bytes:
        """Wait for the next frame.

        Until the broker acknowledges, every wait is bounded by the single
        handshake deadline; afterwards by the heartbeat timeout.
        """
        connected = self._state is ConnectionState.CONNECTED
        if connected:
            timeout = self.config.heartbeat_timeout
        else:
            timeout = max(0.0, ack_deadline - asyncio.get_running_loop().time())

        try:
            if timeout is None:
                return await transport.recv()
            return await asyncio.wait_for(transport.recv(), timeout)
        except asyncio.TimeoutError as e:
            if connected:
                raise TransportError(f"No frame from broker for {timeout}s", Event.HEARTBEAT_TIMEOUT) from e
            raise TransportError(f"Broker did not acknowledge within {self.config.connect_timeout}s") from e
        except TransportError:
            raise
        except ConnectionClosed as e:
            raise TransportError(f"Broker closed the connection: {e}", Event.SOCKET_CLOSED) from e
        except _SOCKET_ERRORS as e:
            raise TransportError(f"Receive failed: {e}") from e

    async def _send(self, frame) -> None:
        transport = self._transport
        if transport is None:
            raise TransportError("Not connected")
        try:
            await transport.send(encode_frame(frame, self._frame_prefix))
        except TransportError:
            raise
        except _SOCKET_ERRORS as e:
            raise TransportError(f"Send failed: {e}") from e

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except (TransportError, *_SOCKET_ERRORS) as e:
            logger.debug(f"Error while closing socket: {e}")

    # --- Inbound frames ---

    async def _handle_raw(self, raw: str | bytes, generation: int) -> None:
        try:
            frame, prefix = parse_frame_with_prefix(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping frame: {e}")
            return

        # Answer in the dialect the broker speaks
        self._frame_prefix = prefix

        try:
            effects = self._apply(_FRAME_EVENTS[type(frame)])
        except InvalidTransitionError as e:
            logger.warning(f"Dropping {frame.type} frame: {e}")
            return

        if Effect.RESET_BACKOFF in effects:
            self._backoff.reset()
            logger.info("Plugin connected successfully")
            self._settle()
        if Effect.ECHO_HEARTBEAT in effects:
            await self._send(HeartbeatFrame())
        if Effect.DISPATCH_WORK in effects:
            self._spawn(frame.to_work_item(), generation)

    def _spawn(self, item: WorkItem, generation: int) -> None:
        logger.info(f"Processing inference request {item.request_id} (model={item.model_name})")
        task = asyncio.create_task(self._process(item, generation), name=f"inference-{item.request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, item: WorkItem, generation: int) -> None:
        try:
            result = await self.dispatcher.handle(item)
        except Exception as e:
            logger.error(f"Dispatcher failed for request {item.request_id}: {e}", exc_info=True)
            result = WorkResult(error_message=str(e) or e.__class__.__name__)

        if generation != self._generation or self._state is not ConnectionState.CONNECTED:
            logger.info(f"Discarding result for request {item.request_id}: connection was lost")
            return

        try:
            await self._send(InferenceResponseFrame.from_result(item.request_id, result))
        except TransportError as e:
            logger.warning(f"Could not send response for request {item.request_id}: {e}")
