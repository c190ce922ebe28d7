"""Exception hierarchy for the Afterburner session layer."""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """错误分类"""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    TRANSPORT_REJECTED = "transport_rejected"
    NOT_CONNECTED = "not_connected"
    INVALID_VALUE = "invalid_value"
    DECODE_ERROR = "decode_error"


class AfterburnerError(Exception):
    """Base exception for all Afterburner errors."""

    kind = ErrorKind.TRANSPORT_REJECTED

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class DeviceNotFoundError(AfterburnerError):
    """Discovery finished without seeing the device."""

    kind = ErrorKind.NOT_FOUND


class ConnectTimeoutError(AfterburnerError):
    """Connect or health check exceeded its deadline."""

    kind = ErrorKind.TIMEOUT


class TransportRejectedError(AfterburnerError):
    """The platform radio/socket API reported a failure."""

    kind = ErrorKind.TRANSPORT_REJECTED


class NotConnectedError(AfterburnerError):
    """Operation attempted while the session is not ready."""

    kind = ErrorKind.NOT_CONNECTED


class InvalidValueError(AfterburnerError):
    """A settings value is outside its allowed range."""

    kind = ErrorKind.INVALID_VALUE

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DecodeError(AfterburnerError):
    """Inbound frame could not be decoded."""

    kind = ErrorKind.DECODE_ERROR
