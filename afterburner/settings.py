"""Settings synchronizer: the single cached copy of the device configuration.

The cache is authoritative on both transports. Settings the device reports
(the socket `settings` frame, or the characteristic reads done after every
packet connect) overwrite it, local changes update it optimistically, and
every change is published on the bus as `EVENT_SETTINGS_UPDATED`.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import voluptuous as vol

from .bus import Unsubscribe
from .codec import FIELD_CHANNELS, PacketCodec
from .config import FIELD_VALIDATORS, clamp_field, rgb8, validate_settings
from .const import (
    COMMAND_SAVE_PRESET,
    EVENT_SETTINGS_UPDATED,
    FIELD_LED_COUNT,
    FIELD_RANGES,
    HARDWARE_VERSION_UUID,
    LED_COUNT_RANGE,
    NEW_HARDWARE_LEDS,
    NUM_LEDS_UUID,
    SETTINGS_FIELDS,
)
from .exceptions import AfterburnerError, NotConnectedError
from .models import (
    DEFAULT_SETTINGS,
    Command,
    ConnectionState,
    Frame,
    HardwareInfo,
    HardwareType,
    InboundMessage,
    Settings,
    SettingsMessage,
    SettingsWrite,
)
from .session import SessionManager

_LOGGER = logging.getLogger(__name__)


def _frame_fields(frame: Frame, message: SettingsWrite) -> List[str]:
    # 包传输一帧一个字段；socket 一帧包含全部字段
    if frame.field in message.fields:
        return [frame.field]
    return [name for name in SETTINGS_FIELDS if name in message.fields]


@dataclass
class PushResult:
    """Outcome of a push; fields already written are never rolled back."""

    written: List[str] = field(default_factory=list)
    failed: Dict[str, AfterburnerError] = field(default_factory=dict)
    saved: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class SettingsSynchronizer:
    """Owns the settings cache and pushes it to the device."""

    def __init__(self, session: SessionManager, initial: Optional[Settings] = None):
        self.session = session
        self._settings = initial or DEFAULT_SETTINGS
        self.hardware: Optional[HardwareInfo] = None
        self._readable = session.transport.supports_read and isinstance(session.codec, PacketCodec)
        session.add_message_handler(self._handle_message)
        session.add_ready_hook(self._on_session_ready)

    def read_cached(self) -> Settings:
        return self._settings

    def subscribe_settings(self, callback: Callable[[Settings], Any]) -> Unsubscribe:
        return self.session.bus.async_listen(EVENT_SETTINGS_UPDATED, callback)

    def _update(self, settings: Settings) -> None:
        if settings == self._settings:
            return
        self._settings = settings
        self.session.bus.async_fire(EVENT_SETTINGS_UPDATED, settings)

    def apply_local(self, partial: Dict[str, Any]) -> Settings:
        """Validate and cache `partial` without transmitting it.

        Raises InvalidValueError and leaves the cache untouched if any value
        is out of range.
        """
        validated = validate_settings(partial)
        if validated:
            self._update(self._settings.merge(validated))
        return self._settings

    def on_device_settings(self, fields: Union[Settings, Dict[str, Any]]) -> Settings:
        """Overwrite the cache with what the device reported.

        Numeric values are clamped into range; an unusable value keeps the
        previous cached value for that field.
        """
        if isinstance(fields, Settings):
            fields = fields.as_dict()

        clean = {}
        for name, value in fields.items():
            if name not in FIELD_VALIDATORS:
                continue
            if name in FIELD_RANGES:
                if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                    _LOGGER.warning(f"Ignoring device value for {name}: {value!r}")
                    continue
                clean[name] = clamp_field(name, value)
            else:
                try:
                    clean[name] = rgb8(value)
                except vol.Invalid as e:
                    _LOGGER.warning(f"Ignoring device value for {name}: {e}")
        if clean:
            _LOGGER.debug(f"Device settings: {clean}")
            self._update(self._settings.merge(clean))
        return self._settings

    def _handle_message(self, message: InboundMessage) -> None:
        if isinstance(message, SettingsMessage):
            self.on_device_settings(message.fields)

    # ------------------------------------------------------------------
    # 推送
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        state = self.session.current_state()
        if state is not ConnectionState.READY:
            raise NotConnectedError(f"Cannot push settings while {state.value}")

    async def push_all(self, save: bool = True) -> PushResult:
        """Write every cached field to the device, then save the preset."""
        self._require_ready()
        fields = self._settings.as_dict()
        if self.hardware is not None and self.hardware.type is HardwareType.NEW:
            # 新硬件 LED 数量固定，不写入
            fields.pop(FIELD_LED_COUNT)
        return await self._transmit(SettingsWrite(fields, full=True), save)

    async def push_changes(self, partial: Dict[str, Any]) -> PushResult:
        """Validate, cache and transmit only the given fields."""
        self._require_ready()
        validated = validate_settings(partial)
        if not validated:
            return PushResult()
        self._update(self._settings.merge(validated))
        return await self._transmit(SettingsWrite(validated), save=False)

    async def _transmit(self, message: SettingsWrite, save: bool) -> PushResult:
        result = PushResult()
        frames = self.session.codec.encode(message)
        for index, frame in enumerate(frames):
            names = _frame_fields(frame, message)
            try:
                await self.session.write_frame(frame)
            except NotConnectedError as err:
                _LOGGER.error(f"Connection lost during push: {err}")
                for rest in frames[index:]:
                    for name in _frame_fields(rest, message):
                        result.failed[name] = err
                break
            except AfterburnerError as err:
                _LOGGER.error(f"Writing {', '.join(names)} failed: {err}")
                for name in names:
                    result.failed[name] = err
                continue
            result.written.extend(names)

        if save and result.ok:
            try:
                await self.session.send(Command(COMMAND_SAVE_PRESET))
            except AfterburnerError as err:
                _LOGGER.error(f"Saving preset failed: {err}")
                result.failed[COMMAND_SAVE_PRESET] = err
            else:
                result.saved = True
        _LOGGER.info(f"Pushed {len(result.written)} field(s), {len(result.failed)} failure(s)")
        return result

    # ------------------------------------------------------------------
    # 连接建立后读取设备状态
    # ------------------------------------------------------------------

    async def _on_session_ready(self) -> None:
        if not self._readable:
            self.hardware = HardwareInfo(HardwareType.LEGACY)
            return
        await self.detect_hardware()
        await self.read_device_settings()

    async def read_device_settings(self) -> Settings:
        """Read every settings characteristic and adopt what the device holds."""
        codec = self.session.codec
        fields = {}
        for name, channel in FIELD_CHANNELS.items():
            try:
                fields[name] = codec.decode_field(name, await self.session.read(channel))
            except AfterburnerError as e:
                # 读取失败的字段保留缓存值
                _LOGGER.debug(f"Reading {name} failed: {e}")
        return self.on_device_settings(fields)

    async def detect_hardware(self) -> HardwareInfo:
        """Tell the LED strip (legacy) from the 4-channel ring (new)."""
        if not self._readable:
            self.hardware = HardwareInfo(HardwareType.LEGACY)
            return self.hardware

        try:
            data = await self.session.read(HARDWARE_VERSION_UUID)
        except AfterburnerError as e:
            _LOGGER.debug(f"Hardware version not available: {e}")
            data = b""

        if data:
            info = HardwareInfo.new_hardware() if data[0] == HardwareType.NEW else HardwareInfo(HardwareType.LEGACY)
        else:
            info = await self._detect_from_led_count()
        _LOGGER.info(f"Detected {info.type.name} hardware")
        self.hardware = info
        return info

    async def _detect_from_led_count(self) -> HardwareInfo:
        try:
            count = self.session.codec.decode_field(FIELD_LED_COUNT, await self.session.read(NUM_LEDS_UUID))
        except AfterburnerError as e:
            _LOGGER.debug(f"LED count not available: {e}")
            return HardwareInfo.new_hardware()

        if count in (0, NEW_HARDWARE_LEDS):
            return HardwareInfo.new_hardware()
        if LED_COUNT_RANGE[0] <= count <= LED_COUNT_RANGE[1]:
            return HardwareInfo(HardwareType.LEGACY, num_leds=count)
        return HardwareInfo.new_hardware()
