import asyncio
import logging
from typing import Optional

from pyneets import codec
from pyneets.listener import ProtocolListener


class AmpProtocol(asyncio.Protocol):
    """asyncio.Protocol for one TCP connection to the amp.

    Reassembles carriage-return framed records from the byte stream and hands
    each complete record to the listener. A fresh instance is created for
    every connection attempt.
    """

    _buffer: bytes
    _transport: Optional[asyncio.Transport]

    def __init__(self, listener: ProtocolListener, attempt: int = 0):
        self._logger = logging.getLogger(__name__)
        self._listener = listener
        # Connect attempt that created this instance
        self.attempt = attempt
        self._buffer = b""
        self._transport = None
        self.peer_name = None

    def connection_made(self, transport):
        """Method from asyncio.Protocol"""
        self._transport = transport
        self.peer_name = transport.get_extra_info("peername")
        self._logger.info(f"Connection Made: {self.peer_name}")
        self._listener.protocol_connected(self, transport)

    def data_received(self, data):
        """Method from asyncio.Protocol"""
        self._logger.debug(f"data_received: {data}")
        records, self._buffer = codec.feed(self._buffer, data)
        for record in records:
            self._logger.debug(f"Whole record: {record}")
            self._listener.record_received(self, record)

    def connection_lost(self, exc):
        """Method from asyncio.Protocol"""
        if self._buffer:
            self._logger.debug(f"Discarding incomplete record on close: {self._buffer}")
        self._buffer = b""
        self._transport = None
        self._listener.protocol_lost(self, exc)

    @property
    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.is_closing()

    def write(self, command: str):
        message = codec.encode(command)
        self._logger.info(f"SEND: {message}")
        self._transport.write(message)

    def close(self):
        if self._transport is not None:
            self._transport.close()
