"""WebSocket transport built on aiohttp."""
import asyncio
import logging
from typing import Optional, Union

import aiohttp

from .const import (
    DEVICE_IP,
    DEVICE_NAME,
    PING_FRAME,
    PONG_FRAME,
    SOCKET_CHANNEL,
    WEBSOCKET_PATH,
    WEBSOCKET_PORT,
)
from .exceptions import ConnectTimeoutError, NotConnectedError, TransportRejectedError
from .models import DeviceHandle
from .transport import Transport

_LOGGER = logging.getLogger(__name__)

# 探测端口的重试间隔（秒）
PROBE_INTERVAL = 1.0


class WebSocketTransport(Transport):
    """JSON text frames over one WebSocket to the device's access point."""

    name = "socket"

    def __init__(self, host: str = DEVICE_IP, port: int = WEBSOCKET_PORT, path: str = WEBSOCKET_PATH,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__()
        self.host = host
        self.port = port
        self.path = path if path.startswith("/") else f"/{path}"
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pong: Optional[asyncio.Future] = None
        self._closing = False

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}"

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def scan(self, timeout: float) -> Optional[DeviceHandle]:
        """Probe the fixed address until the port accepts a TCP connection."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                _LOGGER.warning(f"{self.host}:{self.port} not reachable within {timeout}s")
                return None
            try:
                _reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port), timeout=remaining
                )
            except asyncio.TimeoutError:
                continue
            except OSError as e:
                _LOGGER.debug(f"Probe of {self.host}:{self.port} failed: {e}")
                await asyncio.sleep(min(PROBE_INTERVAL, max(0.0, deadline - loop.time())))
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                _LOGGER.debug(f"Closing probe socket failed: {e}")
            return DeviceHandle(identifier=f"{self.host}:{self.port}", name=DEVICE_NAME, address=self.url)

    async def connect(self, handle: DeviceHandle, timeout: float) -> None:
        await self._close()
        self._closing = False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        _LOGGER.debug(f"Connecting to WebSocket {handle.address}")
        try:
            self._ws = await asyncio.wait_for(self._open(handle.address), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._close()
            raise ConnectTimeoutError(f"WebSocket connection to {handle.address} timed out") from e
        except (aiohttp.ClientError, OSError) as e:
            await self._close()
            raise TransportRejectedError(f"WebSocket connection to {handle.address} failed: {e}") from e

        self._reader = asyncio.get_running_loop().create_task(self._receive_loop(self._ws))
        _LOGGER.info(f"WebSocket connected to {handle.address}")

    async def _open(self, url: str) -> aiohttp.ClientWebSocketResponse:
        return await self._session.ws_connect(url)

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    if msg.data == PONG_FRAME and self._pong is not None and not self._pong.done():
                        self._pong.set_result(None)
                    self._dispatch(SOCKET_CHANNEL, msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._dispatch(SOCKET_CHANNEL, msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    _LOGGER.warning(f"WebSocket error: {ws.exception()}")
                    break
        finally:
            if self._pong is not None and not self._pong.done():
                self._pong.set_exception(NotConnectedError("WebSocket closed while waiting for pong"))
            if not self._closing and ws is self._ws:
                _LOGGER.warning("WebSocket closed by peer")
                self._notify_disconnected()

    async def disconnect(self) -> None:
        self._closing = True
        await self._close()

    async def _close(self) -> None:
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                _LOGGER.debug(f"Receive loop ended with {e}")
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                _LOGGER.debug(f"Error closing WebSocket: {e}")
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            await session.close()

    async def write(self, channel: str, payload: Union[bytes, str]) -> None:
        if not self.is_connected:
            raise NotConnectedError("WebSocket is not connected")
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise TransportRejectedError(f"WebSocket send failed: {e}") from e
        _LOGGER.debug(f"Sent {text}")

    async def ping(self) -> None:
        """Send `ping` and wait for the device's `pong`.

        Never returns on a half-open link; the caller bounds it with a timeout.
        """
        pong = asyncio.get_running_loop().create_future()
        self._pong = pong
        try:
            await self.write(SOCKET_CHANNEL, PING_FRAME)
            await pong
        finally:
            if self._pong is pong:
                self._pong = None
