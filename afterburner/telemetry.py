"""Status and calibration fan-out over one underlying subscription per channel."""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Optional, Set

from .bus import Unsubscribe
from .codec import TELEMETRY_CALIBRATION, TELEMETRY_STATUS, decode_calibration
from .const import EVENT_CALIBRATION_UPDATED, EVENT_STATUS_UPDATED
from .exceptions import AfterburnerError, DecodeError, NotConnectedError
from .models import (
    DEFAULT_CALIBRATION,
    CalibrationMessage,
    CalibrationState,
    ConnectionState,
    DeviceStatus,
    InboundMessage,
    StatusMessage,
)
from .session import SessionManager

_LOGGER = logging.getLogger(__name__)

STREAM_EVENTS = {
    TELEMETRY_STATUS: EVENT_STATUS_UPDATED,
    TELEMETRY_CALIBRATION: EVENT_CALIBRATION_UPDATED,
}


class TelemetrySubscriber:
    """Fans status and calibration updates out to any number of callbacks.

    A transport channel is opened when its first subscriber arrives and
    closed when the last one leaves. After every reconnect the channels that
    still have subscribers are reopened before the session reports READY.
    """

    def __init__(self, session: SessionManager):
        self.session = session
        self.bus = session.bus
        self.last_status: Optional[DeviceStatus] = None
        self.last_calibration: Optional[CalibrationState] = None
        self._open: Set[str] = set()
        self._closing: Dict[str, asyncio.Task] = {}  # 每个通道待执行的 stop_notify

        session.add_message_handler(self._handle_message)
        session.add_ready_hook(self._resubscribe)
        session.subscribe_state(self._on_state)
        for stream, event in STREAM_EVENTS.items():
            self.bus.on_last_listener_removed(event, functools.partial(self._on_stream_idle, stream))

    async def subscribe_status(self, callback: Callable[[DeviceStatus], Any]) -> Unsubscribe:
        return await self._subscribe(TELEMETRY_STATUS, callback)

    async def subscribe_calibration(self, callback: Callable[[CalibrationState], Any]) -> Unsubscribe:
        return await self._subscribe(TELEMETRY_CALIBRATION, callback)

    async def _subscribe(self, stream: str, callback: Callable[[Any], Any]) -> Unsubscribe:
        unsubscribe = self.bus.async_listen(STREAM_EVENTS[stream], callback)
        if self.session.current_state() is ConnectionState.READY:
            await self._open_stream(stream)
        return unsubscribe

    def _wanted(self, stream: str) -> bool:
        return self.bus.listener_count(STREAM_EVENTS[stream]) > 0

    def _channel(self, stream: str) -> Optional[str]:
        return self.session.codec.telemetry_channels.get(stream)

    async def _open_stream(self, stream: str) -> None:
        channel = self._channel(stream)
        if channel is None:
            return
        closing = self._closing.get(channel)
        if closing is not None:
            # 先等上一次关闭完成，再重新打开
            await closing
        if channel in self._open:
            return
        try:
            await self.session.start_notify(channel)
        except AfterburnerError as e:
            _LOGGER.warning(f"Subscribing to {stream} failed: {e}")
            return
        self._open.add(channel)
        _LOGGER.debug(f"Opened {stream} channel {channel}")
        if stream == TELEMETRY_CALIBRATION:
            # 订阅后主动读取一次当前校准状态
            try:
                await self.read_calibration()
            except NotConnectedError:
                pass

    async def _resubscribe(self) -> None:
        """重连后重新打开仍有订阅者的通道"""
        self._open.clear()
        for stream in STREAM_EVENTS:
            if self._wanted(stream):
                await self._open_stream(stream)

    def _on_stream_idle(self, stream: str) -> None:
        channel = self._channel(stream)
        if channel is None or channel not in self._open:
            return
        self._open.discard(channel)
        if self.session.current_state() is not ConnectionState.READY:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._close_channel(channel))
        self._closing[channel] = task

    async def _close_channel(self, channel: str) -> None:
        try:
            await self.session.stop_notify(channel)
        except AfterburnerError as e:
            _LOGGER.debug(f"Closing channel {channel} failed: {e}")
        finally:
            if self._closing.get(channel) is asyncio.current_task():
                del self._closing[channel]

    def _on_state(self, state: ConnectionState) -> None:
        if state in (ConnectionState.IDLE, ConnectionState.FAILED):
            self._open.clear()
        if state is ConnectionState.IDLE:
            self.last_status = None
            self.last_calibration = None

    def _handle_message(self, message: InboundMessage) -> None:
        if isinstance(message, StatusMessage):
            self.last_status = message.status
            self.bus.async_fire(EVENT_STATUS_UPDATED, message.status)
        elif isinstance(message, CalibrationMessage):
            self._publish_calibration(message.calibration)

    def _publish_calibration(self, calibration: CalibrationState) -> None:
        self.last_calibration = calibration
        self.bus.async_fire(EVENT_CALIBRATION_UPDATED, calibration)

    async def read_calibration(self) -> CalibrationState:
        """Read calibration status on demand.

        An unreadable or undersized record yields the default state.
        """
        channel = self._channel(TELEMETRY_CALIBRATION)
        if channel is None or not self.session.transport.supports_read:
            return self.last_calibration or DEFAULT_CALIBRATION
        try:
            data = await self.session.read(channel)
            calibration = decode_calibration(data)
        except NotConnectedError:
            raise
        except DecodeError as e:
            _LOGGER.warning(f"Dropping calibration record: {e}")
            return DEFAULT_CALIBRATION
        except AfterburnerError as e:
            _LOGGER.warning(f"Reading calibration failed: {e}")
            return DEFAULT_CALIBRATION
        self._publish_calibration(calibration)
        return calibration
