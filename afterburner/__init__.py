# afterburner/__init__.py
"""Afterburner LED controller: BLE and WebSocket session library."""
import logging

from .bus import EventBus, Unsubscribe
from .codec import PacketCodec, SocketCodec, WireCodec
from .config import SessionConfig
from .const import DOMAIN
from .controller import AfterburnerController
from .exceptions import (
    AfterburnerError,
    ConnectTimeoutError,
    DecodeError,
    DeviceNotFoundError,
    ErrorKind,
    InvalidValueError,
    NotConnectedError,
    TransportRejectedError,
)
from .models import (
    RGB8,
    CalibrationState,
    ConnectionState,
    DeviceHandle,
    DeviceStatus,
    HardwareInfo,
    HardwareType,
    Mode,
    Settings,
)
from .session import SessionManager
from .settings import PushResult, SettingsSynchronizer
from .telemetry import TelemetrySubscriber
from .transport import Transport

_LOGGER = logging.getLogger(__name__)
_LOGGER.addHandler(logging.NullHandler())

__version__ = "0.1.0"
