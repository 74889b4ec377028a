"""Connection management for the NEETS amp.

Owns the socket lifecycle: connect, read loop, write, failure detection,
automatic reconnection with backoff and the manual connect/disconnect
override. Incoming records are interpreted and applied to the state store
here, and resulting changes are published to the listeners.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pyneets.exceptions import ConnectionFailure, NotConnectedError, ReconnectExhausted
from pyneets.interpreter import interpret
from pyneets.listener import MultiplexingListener, ProtocolListener
from pyneets.protocol import AmpProtocol
from pyneets.state import DeviceStateStore

BACKOFF_FACTOR = 1.5


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    FAILED = "failed"


@dataclass
class ReconnectState:
    """Backoff bookkeeping for automatic reconnection."""
    base_delay: float = 5.0
    max_delay: float = 30.0
    max_attempts: int = 10
    attempts: int = 0
    delay: Optional[float] = None
    manually_disconnected: bool = False
    exhausted: bool = False

    def __post_init__(self):
        if self.delay is None:
            self.delay = self.base_delay

    def reset(self):
        self.attempts = 0
        self.delay = self.base_delay
        self.exhausted = False

    def next_delay(self) -> Optional[float]:
        """Count a failed attempt and return the delay before the next retry.

        Returns None once ``max_attempts`` retries have been used up.
        """
        if self.attempts >= self.max_attempts:
            self.exhausted = True
            return None
        self.attempts += 1
        delay = self.delay
        self.delay = min(self.delay * BACKOFF_FACTOR, self.max_delay)
        return delay


class ConnectionManager(ProtocolListener):
    """Single persistent connection to the amp with reconnection."""

    def __init__(
        self,
        hostname,
        port,
        store: DeviceStateStore,
        notifier: MultiplexingListener,
        reconnect_delay: float = 5.0,
        max_reconnect_delay: float = 30.0,
        max_reconnect_attempts: int = 10,
        connect_timeout: float = 5.0,
        idle_timeout: Optional[float] = 30.0,
        on_connected: Callable[[], None] = None,
        on_disconnected: Callable[[], None] = None,
    ):
        self._logger = logging.getLogger(__name__)
        self._hostname = hostname
        self._port = port
        self._store = store
        self._notifier = notifier
        self._connect_timeout = connect_timeout
        self._idle_timeout = idle_timeout
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected

        self._state = ConnectionState.DISCONNECTED
        self._reconnect = ReconnectState(
            base_delay=reconnect_delay,
            max_delay=max_reconnect_delay,
            max_attempts=max_reconnect_attempts,
        )
        self._protocol: Optional[AmpProtocol] = None
        self._shutting_down = False
        # Bumped by every connect and close, so a connect still in flight
        # when it is superseded can be recognised and discarded
        self._connect_attempt = 0

        # Tasks
        self._reconnect_task: Optional[asyncio.Task[Any]] = None
        self._connection_watchdog_task: Optional[asyncio.Task[Any]] = None

        # Track last received data time to detect silent/stalled connections
        self._last_receive_timestamp: float = time.time()

    # ========== Properties ==========

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def manually_disconnected(self) -> bool:
        return self._reconnect.manually_disconnected

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def hostname(self):
        return self._hostname

    @property
    def port(self):
        return self._port

    # ========== Connect / disconnect ==========

    async def async_connect(self) -> bool:
        """Open the connection unless already connected or connecting."""
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            self._logger.debug(f"Connect ignored, already {self._state.value}")
            return self.connected
        if self._shutting_down:
            return False

        self._state = ConnectionState.CONNECTING
        self._connect_attempt += 1
        attempt = self._connect_attempt
        self._logger.info(f"Connecting to NEETS amp at {self._hostname}:{self._port}")
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.create_connection(lambda: AmpProtocol(self, attempt), host=self._hostname, port=self._port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            if attempt != self._connect_attempt:
                self._logger.debug(f"Superseded connect attempt failed: {e!r}")
                return self.connected
            self._handle_connection_broken(ConnectionFailure(f"Could not connect to {self._hostname}:{self._port}: {e!r}"))
            return False
        return self.connected

    async def connect(self) -> bool:
        """Manual connect: lifts a manual disconnect and resets the backoff."""
        self._logger.info("Manual connect requested")
        self._reconnect.manually_disconnected = False
        self._reconnect.reset()
        self._cancel_reconnect()
        return await self.async_connect()

    def disconnect(self):
        """Manual disconnect: closes the socket and suppresses reconnection."""
        self._logger.info("Manual disconnect requested")
        self._reconnect.manually_disconnected = True
        self._reconnect.reset()
        self._close(ConnectionState.CLOSING)

    async def async_close(self):
        """Bridge shutdown: stop all connection activity for good."""
        self._shutting_down = True
        self._reconnect.manually_disconnected = True
        self._close(ConnectionState.CLOSING)

    def _close(self, closing_state: ConnectionState):
        self._connect_attempt += 1
        self._cancel_reconnect()
        self._cancel_watchdog()
        was_connected = self.connected
        protocol = self._protocol
        self._protocol = None
        if protocol is not None:
            self._state = closing_state
            protocol.close()
        self._state = ConnectionState.DISCONNECTED
        if self._on_disconnected:
            self._on_disconnected()
        self._publish_disconnected(was_connected)

    # ========== Sending ==========

    def send(self, command: str) -> bool:
        """Write one command. Returns False (and logs) when not connected."""
        if not self.connected or self._protocol is None or not self._protocol.is_open:
            error = NotConnectedError(f"Cannot send {command!r}: not connected to NEETS amp")
            self._logger.warning(str(error))
            return False
        try:
            self._protocol.write(command)
        except Exception as e:
            self._logger.error(f"Error sending command {command!r}: {e}", exc_info=True)
            return False
        return True

    # ========== ProtocolListener ==========

    def protocol_connected(self, protocol, transport):
        if self._shutting_down or self._reconnect.manually_disconnected:
            self._logger.info("Connection completed after disconnect was requested, closing it")
            transport.close()
            return
        if protocol.attempt != self._connect_attempt:
            self._logger.info(f"Closing connection from superseded attempt {protocol.attempt}")
            transport.close()
            return
        self._protocol = protocol
        self._state = ConnectionState.CONNECTED
        self._reconnect.reset()
        self._last_receive_timestamp = time.time()
        self._logger.info(f"Connected to NEETS amp at {self._hostname}:{self._port}")

        self._store.set_connected(True)
        self._notifier.connected()
        self._notifier.state_changed(self._store.snapshot())

        if self._idle_timeout:
            self._cancel_watchdog()
            self._connection_watchdog_task = asyncio.get_running_loop().create_task(self._connection_watchdog())

        if self._on_connected:
            self._on_connected()

    def record_received(self, protocol, record: str):
        if protocol is not self._protocol:
            return
        self._last_receive_timestamp = time.time()
        self._logger.debug(f"RECV: {record}")
        try:
            result = interpret(record)
            if result.error is not None:
                self._logger.error(str(result.error))
                self._notifier.device_error(result.error.record)
                return
            if self._store.apply(result.deltas):
                self._notifier.state_changed(self._store.snapshot())
        except Exception as e:
            self._logger.error(f"Error processing record {record!r}: {e}", exc_info=True)

    def protocol_lost(self, protocol, exc: Optional[Exception]):
        if protocol is not self._protocol:
            # Superseded or deliberately closed connection
            return
        self._protocol = None
        self._handle_connection_broken(ConnectionFailure(f"Connection to {self._hostname} lost: {exc!r}"))

    # ========== Failure handling and reconnection ==========

    def _handle_connection_broken(self, failure: ConnectionFailure):
        """Handle a failed connect or a lost connection."""
        was_connected = self.connected
        self._state = ConnectionState.FAILED
        self._cancel_watchdog()
        self._state = ConnectionState.DISCONNECTED
        if was_connected and self._on_disconnected:
            self._on_disconnected()
        self._publish_disconnected(was_connected)

        if self._reconnect.manually_disconnected or self._shutting_down:
            self._logger.info(f"{failure}, not reconnecting")
            return
        self._schedule_reconnect(failure)

    def _schedule_reconnect(self, failure: ConnectionFailure):
        delay = self._reconnect.next_delay()
        if delay is None:
            exhausted = ReconnectExhausted(
                f"Max reconnection attempts ({self._reconnect.max_attempts}) reached, "
                f"check the NEETS amp connection"
            )
            self._logger.error(f"{failure}; {exhausted}")
            self._notifier.reconnect_exhausted()
            return
        self._logger.error(
            f"{failure}, will try to reconnect in {delay:g} seconds "
            f"(attempt {self._reconnect.attempts}/{self._reconnect.max_attempts})"
        )
        self._cancel_reconnect()
        self._reconnect_task = asyncio.get_running_loop().create_task(self._wait_to_reconnect(delay))

    async def _wait_to_reconnect(self, delay: float):
        """Attempt to reconnect after connection loss."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._logger.debug("Pending reconnect cancelled")
            raise
        if self._reconnect.manually_disconnected or self._shutting_down:
            return
        self._reconnect_task = None
        await self.async_connect()

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _connection_watchdog(self):
        """Close the connection if the device has gone silent.

        The background poll makes the device answer every few seconds, so a
        long silence means the socket is dead without having been closed.
        """
        check_interval_seconds = min(5.0, self._idle_timeout)
        while self.connected:
            await asyncio.sleep(check_interval_seconds)
            elapsed_seconds = time.time() - self._last_receive_timestamp
            if self.connected and elapsed_seconds > self._idle_timeout:
                self._logger.error(
                    f"[WATCHDOG] No data received for {elapsed_seconds:.1f}s, dropping connection"
                )
                protocol = self._protocol
                if protocol is not None:
                    # connection_lost() drives the reconnection
                    protocol.close()
                return

    def _cancel_watchdog(self):
        task = self._connection_watchdog_task
        self._connection_watchdog_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _publish_disconnected(self, was_connected: bool):
        if self._store.set_connected(False):
            self._notifier.state_changed(self._store.snapshot())
        if was_connected:
            self._notifier.disconnected()
