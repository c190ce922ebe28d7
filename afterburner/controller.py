"""Controller facade wiring transport, codec, session, settings and telemetry."""
import logging
from typing import Any, Callable, Dict, Optional

import aiohttp

from .ble_transport import BLETransport
from .bus import EventBus, Unsubscribe
from .codec import PacketCodec, SocketCodec, WireCodec
from .config import SessionConfig
from .const import COMMAND_RESET_CALIBRATION, COMMAND_START_CALIBRATION, TRANSPORT_SOCKET
from .exceptions import AfterburnerError
from .models import (
    CalibrationState,
    Command,
    ConnectionState,
    DeviceStatus,
    HardwareInfo,
    Settings,
)
from .session import SessionManager
from .settings import PushResult, SettingsSynchronizer
from .socket_transport import WebSocketTransport
from .telemetry import TelemetrySubscriber
from .transport import Transport

_LOGGER = logging.getLogger(__name__)


class AfterburnerController:
    """One device session and everything a UI needs to drive it.

    Build one with `from_config()`, or pass a transport and codec directly
    (tests do this with an in-memory transport). Instances share nothing, so
    several can run side by side.
    """

    def __init__(self, transport: Transport, codec: WireCodec, config: Optional[SessionConfig] = None,
                 bus: Optional[EventBus] = None):
        self.config = config or SessionConfig()
        self.bus = bus or EventBus()
        self.session = SessionManager(transport, codec, self.config, self.bus)
        self.settings = SettingsSynchronizer(self.session)
        self.telemetry = TelemetrySubscriber(self.session)

    @classmethod
    def from_config(cls, data: Optional[Dict[str, Any]] = None,
                    http_session: Optional[aiohttp.ClientSession] = None) -> "AfterburnerController":
        """根据配置创建对应的传输层"""
        config = SessionConfig.from_dict(data)
        if config.transport == TRANSPORT_SOCKET:
            transport = WebSocketTransport(config.host, config.port, config.path, session=http_session)
            codec = SocketCodec()
        else:
            transport = BLETransport(config.name, config.mac)
            codec = PacketCodec()
        _LOGGER.debug(f"Created {transport.name} controller for {config.name}")
        return cls(transport, codec, config)

    async def __aenter__(self) -> "AfterburnerController":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # 连接
    async def connect(self) -> ConnectionState:
        return await self.session.connect()

    async def disconnect(self) -> None:
        await self.session.disconnect()

    def current_state(self) -> ConnectionState:
        return self.session.current_state()

    @property
    def last_error(self) -> Optional[AfterburnerError]:
        return self.session.last_error

    def subscribe_state(self, callback: Callable[[ConnectionState], Any]) -> Unsubscribe:
        return self.session.subscribe_state(callback)

    # 设置
    def apply_local(self, partial: Dict[str, Any]) -> Settings:
        return self.settings.apply_local(partial)

    async def push_all(self, save: bool = True) -> PushResult:
        return await self.settings.push_all(save)

    async def push_changes(self, partial: Dict[str, Any]) -> PushResult:
        return await self.settings.push_changes(partial)

    def read_cached(self) -> Settings:
        return self.settings.read_cached()

    def subscribe_settings(self, callback: Callable[[Settings], Any]) -> Unsubscribe:
        return self.settings.subscribe_settings(callback)

    # 遥测
    async def subscribe_status(self, callback: Callable[[DeviceStatus], Any]) -> Unsubscribe:
        return await self.telemetry.subscribe_status(callback)

    async def subscribe_calibration(self, callback: Callable[[CalibrationState], Any]) -> Unsubscribe:
        return await self.telemetry.subscribe_calibration(callback)

    @property
    def last_status(self) -> Optional[DeviceStatus]:
        return self.telemetry.last_status

    # 校准
    async def start_calibration(self) -> None:
        _LOGGER.info("Starting throttle calibration")
        await self.session.send(Command(COMMAND_START_CALIBRATION))

    async def reset_calibration(self) -> None:
        _LOGGER.info("Resetting throttle calibration")
        await self.session.send(Command(COMMAND_RESET_CALIBRATION))

    async def read_calibration(self) -> CalibrationState:
        return await self.telemetry.read_calibration()

    # 硬件
    async def detect_hardware(self) -> HardwareInfo:
        return await self.settings.detect_hardware()

    def get_hardware_info(self) -> Optional[HardwareInfo]:
        return self.settings.hardware
