"""Transport interface shared by the BLE and WebSocket implementations."""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from .exceptions import TransportRejectedError
from .models import DeviceHandle

_LOGGER = logging.getLogger(__name__)

ReceiveCallback = Callable[[str, Union[bytes, str]], None]
DisconnectCallback = Callable[[], None]


class Transport(ABC):
    """Connect/disconnect/write/receive primitives for one physical medium.

    Implementations translate their platform errors into the
    `AfterburnerError` hierarchy and report inbound units and link loss
    through the callbacks installed with `set_callbacks`.
    """

    name = "transport"
    #: whether `read()` is available (characteristic reads)
    supports_read = False

    def __init__(self):
        self._on_receive: Optional[ReceiveCallback] = None
        self._on_disconnect: Optional[DisconnectCallback] = None

    def set_callbacks(self, on_receive: Optional[ReceiveCallback], on_disconnect: Optional[DisconnectCallback]) -> None:
        self._on_receive = on_receive
        self._on_disconnect = on_disconnect

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the link is up."""

    @abstractmethod
    async def scan(self, timeout: float) -> Optional[DeviceHandle]:
        """Look for the device; None if it was not seen within `timeout`."""

    @abstractmethod
    async def connect(self, handle: DeviceHandle, timeout: float) -> None:
        """Open the link and complete the handshake."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release the link; must not raise."""

    @abstractmethod
    async def write(self, channel: str, payload: Union[bytes, str]) -> None:
        """Send one unit on `channel`."""

    async def read(self, channel: str) -> bytes:
        raise TransportRejectedError(f"{self.name} transport does not support reads")

    async def start_notify(self, channel: str) -> None:
        """Begin delivering inbound units for `channel`."""

    async def stop_notify(self, channel: str) -> None:
        """Stop delivering inbound units for `channel`."""

    @abstractmethod
    async def ping(self) -> None:
        """Cheap round trip used by the health check."""

    def _dispatch(self, channel: str, payload: Union[bytes, str]) -> None:
        if self._on_receive is None:
            return
        try:
            self._on_receive(channel, payload)
        except Exception:
            # 接收循环不能因上层异常而中断
            _LOGGER.exception(f"Error handling inbound data on {channel}")

    def _notify_disconnected(self) -> None:
        if self._on_disconnect is None:
            return
        try:
            self._on_disconnect()
        except Exception:
            _LOGGER.exception("Error handling transport disconnect")
