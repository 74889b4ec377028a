"""NEETS amp bridge.

This module contains the high-level bridge that external transports talk to.
It wires one of each component together around a single DeviceStateStore:
- ConnectionManager: socket lifecycle, read loop, reconnection
- CommandScheduler: validation, direct/step/hold commands and polling
- MultiplexingListener: state change fan-out to subscribers

All of it runs on the event loop the bridge is used from.
"""

import logging
from typing import Optional

from pyneets.config import BridgeConfig
from pyneets.connection import ConnectionManager
from pyneets.listener import BridgeListener, MultiplexingListener
from pyneets.scheduler import CommandResult, CommandScheduler
from pyneets.state import DeviceSnapshot, DeviceStateStore

# Actions handled by the bridge itself rather than the scheduler
CONNECTION_ACTIONS = ("get_state", "connect", "disconnect", "connection_toggle", "connection_status")


class NeetsAmpBridge:
    """Bridge between one NEETS amp and any number of remote clients."""

    def __init__(self, hostname, port, poll_interval=5.0, reconnect_delay=5.0,
                 max_reconnect_delay=30.0, max_reconnect_attempts=10, connect_timeout=5.0,
                 idle_timeout: Optional[float] = 30.0, hold_initial_delay=1.0,
                 hold_repeat_interval=0.5, poll_step_delay=0.1):
        """Initialize bridge.

        Args:
            hostname: NEETS amp hostname or IP
            port: TCP control port (usually 5000)
            poll_interval: Seconds between background status polls, 0 disables them
            reconnect_delay: Seconds before the first reconnect attempt
            max_reconnect_delay: Cap for the reconnect backoff
            max_reconnect_attempts: Automatic retries before giving up
            connect_timeout: Seconds to wait for the TCP connection
            idle_timeout: Drop the connection after this long without data, None to disable
            hold_initial_delay: Seconds a control must be held before it repeats
            hold_repeat_interval: Seconds between repeats while held
            poll_step_delay: Seconds between the queries of a status poll
        """
        self._logger = logging.getLogger(__name__)
        self._hostname = hostname
        self._port = port

        self._store = DeviceStateStore()
        self._notifier = MultiplexingListener()
        self._connection = ConnectionManager(
            hostname,
            port,
            self._store,
            self._notifier,
            reconnect_delay=reconnect_delay,
            max_reconnect_delay=max_reconnect_delay,
            max_reconnect_attempts=max_reconnect_attempts,
            connect_timeout=connect_timeout,
            idle_timeout=idle_timeout if poll_interval else None,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
        )
        self._scheduler = CommandScheduler(
            self._connection,
            self._store,
            poll_interval=poll_interval,
            poll_step_delay=poll_step_delay,
            hold_initial_delay=hold_initial_delay,
            hold_repeat_interval=hold_repeat_interval,
        )

    @classmethod
    def from_config(cls, config: BridgeConfig) -> "NeetsAmpBridge":
        return cls(
            config.neets_host,
            config.neets_port,
            poll_interval=config.poll_interval,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_delay=config.max_reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            connect_timeout=config.connect_timeout,
            idle_timeout=config.idle_timeout,
            hold_initial_delay=config.hold_initial_delay,
            hold_repeat_interval=config.hold_repeat_interval,
            poll_step_delay=config.poll_step_delay,
        )

    # ========== Connection lifecycle handlers ==========

    def _on_connected(self):
        """Called by the ConnectionManager once the socket is up."""
        self._scheduler.full_status_poll()
        self._scheduler.start_polling()

    def _on_disconnected(self):
        """Called by the ConnectionManager when the socket goes away."""
        self._scheduler.stop_all()

    # ========== Public API ==========

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def scheduler(self) -> CommandScheduler:
        return self._scheduler

    @property
    def connected(self) -> bool:
        return self._connection.connected

    def get_state(self) -> DeviceSnapshot:
        return self._store.snapshot()

    def get_connection_status(self) -> dict:
        reconnect = self._connection.reconnect_state
        return {
            "connected": self._connection.connected,
            "manually_disconnected": reconnect.manually_disconnected,
            "state": self._connection.state.value,
            "reconnect_attempts": reconnect.attempts,
            "reconnect_exhausted": reconnect.exhausted,
            "host": self._hostname,
            "port": self._port,
        }

    def register_listener(self, listener: BridgeListener):
        """Register external listener for bridge events."""
        self._notifier.register_listener(listener)

    def unregister_listener(self, listener: BridgeListener):
        """Unregister external listener."""
        self._notifier.unregister_listener(listener)

    async def async_connect(self) -> bool:
        """Connect to the amp. Failures are retried in the background."""
        return await self._connection.async_connect()

    async def connect(self) -> bool:
        """Manual connect, lifting a previous manual disconnect."""
        return await self._connection.connect()

    def disconnect(self):
        """Manual disconnect, no reconnection until ``connect`` is called."""
        self._connection.disconnect()

    async def submit(self, action: str, params: dict = None) -> CommandResult:
        """Run an action from the external message vocabulary."""
        params = params or {}
        self._logger.debug(f"Submit {action} {params}")
        if action == "get_state":
            return CommandResult(True, action, data=self.get_state().to_dict())
        if action == "connection_status":
            return CommandResult(True, action, data=self.get_connection_status())
        if action == "connect":
            connected = await self.connect()
            return CommandResult(connected, action, None if connected else "Connection failed",
                                 None if connected else "ConnectionFailure", self.get_connection_status())
        if action == "disconnect":
            self.disconnect()
            return CommandResult(True, action, data=self.get_connection_status())
        if action == "connection_toggle":
            if self._connection.connected:
                return await self.submit("disconnect")
            return await self.submit("connect")
        return self._scheduler.submit(action, params)

    async def async_shutdown(self):
        """Stop timers, close the device socket, then drop all listeners."""
        self._logger.info("Shutting down bridge")
        self._scheduler.stop_all()
        await self._connection.async_close()
        self._notifier.unregister_all()
