import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from pyneets.state import DeviceSnapshot


class BridgeListener(ABC):

    @abstractmethod
    def state_changed(self, snapshot: DeviceSnapshot):
        pass

    @abstractmethod
    def connected(self):
        pass

    @abstractmethod
    def disconnected(self):
        pass

    def device_error(self, error_message: str):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass

    def reconnect_exhausted(self):
        # By default, do nothing but can be overwritten to be notified of these messages.
        pass


class MultiplexingListener(BridgeListener):
    """Fans bridge events out to every registered listener.

    A listener that raises is logged and skipped so it can neither stop the
    other listeners nor the read loop that triggered the event.
    """

    _listeners: List[BridgeListener]

    def __init__(self):
        self._logger = logging.getLogger(__name__)
        self._listeners = []

    def _dispatch(self, event: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception as e:
                self._logger.error(f"Exception in {event}() of listener {listener!r}: {e}", exc_info=True)

    def state_changed(self, snapshot: DeviceSnapshot):
        self._dispatch("state_changed", snapshot)

    def connected(self):
        self._dispatch("connected")

    def disconnected(self):
        self._dispatch("disconnected")

    def device_error(self, error_message: str):
        self._dispatch("device_error", error_message)

    def reconnect_exhausted(self):
        self._dispatch("reconnect_exhausted")

    def register_listener(self, listener: BridgeListener):
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_listener(self, listener: BridgeListener):
        if listener in self._listeners:
            self._listeners.remove(listener)
        else:
            self._logger.info("Listener isn't registered")

    def unregister_all(self):
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class LoggingListener(BridgeListener):

    def __init__(self, logger=logging):
        self.logger = logger

    def connected(self):
        self.logger.info("Connected")

    def disconnected(self):
        self.logger.info("Disconnected")

    def state_changed(self, snapshot: DeviceSnapshot):
        self.logger.info(
            f"State: power={snapshot.power} source={snapshot.source} "
            f"volume={snapshot.volume_db}dB mute={snapshot.mute} "
            f"mix={snapshot.mix_mode} mix_volume={snapshot.mix_volume_db}dB "
            f"gains={list(snapshot.input_gains_db)} "
            f"eq={snapshot.eq_low_db}/{snapshot.eq_mid_db}/{snapshot.eq_high_db}"
        )

    def device_error(self, error_message: str):
        self.logger.warning(f"Device error: {error_message}")

    def reconnect_exhausted(self):
        self.logger.error("Reconnection attempts exhausted")


class AsyncQueueListener(BridgeListener):
    """Buffers events into an asyncio.Queue for a consumer running at its own pace.

    Items are ``(event_name, payload)`` tuples. When the queue is full the oldest
    item is dropped so a slow consumer never blocks the bridge.
    """

    def __init__(self, maxsize: int = 100):
        self._logger = logging.getLogger(__name__)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _put(self, event: str, payload: Optional[object] = None):
        if self.queue.full():
            try:
                dropped = self.queue.get_nowait()
                self._logger.debug(f"Queue full, dropped oldest event {dropped[0]}")
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait((event, payload))

    def state_changed(self, snapshot: DeviceSnapshot):
        self._put("state_changed", snapshot)

    def connected(self):
        self._put("connected")

    def disconnected(self):
        self._put("disconnected")

    def device_error(self, error_message: str):
        self._put("device_error", error_message)

    def reconnect_exhausted(self):
        self._put("reconnect_exhausted")


class ProtocolListener(ABC):
    """Receives transport level events from an AmpProtocol instance.

    The protocol instance is passed along so events from a superseded
    connection can be told apart from the current one.
    """

    @abstractmethod
    def protocol_connected(self, protocol, transport):
        pass

    @abstractmethod
    def record_received(self, protocol, record: str):
        pass

    @abstractmethod
    def protocol_lost(self, protocol, exc: Optional[Exception]):
        pass
