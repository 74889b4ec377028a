"""Exceptions for the NEETS amp bridge."""


class NeetsError(Exception):
    """Base exception for the bridge."""


class NotConnectedError(NeetsError):
    """A send was attempted while the device is not connected."""


class MalformedResponseError(NeetsError):
    """A numeric token in a device response could not be parsed."""

    def __init__(self, token: str, value: str):
        super().__init__(f"Malformed value for {token}: {value!r}")
        self.token = token
        self.value = value


class DeviceErrorSignal(NeetsError):
    """The device answered with an explicit error record."""

    def __init__(self, record: str):
        super().__init__(f"Device reported error: {record}")
        self.record = record


class ConnectionFailure(NeetsError):
    """Socket level failure talking to the device."""


class ReconnectExhausted(NeetsError):
    """Automatic reconnection gave up after the maximum number of attempts."""


class InvalidParameter(NeetsError):
    """A submitted command parameter is missing or out of range."""
