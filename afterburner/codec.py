"""Wire codecs: typed messages <-> transport frames.

`PacketCodec` maps every settings field to its own BLE characteristic with a
fixed-length little-endian layout. `SocketCodec` speaks single JSON objects
over the WebSocket. Both raise `DecodeError` for malformed input; callers on
the receive path log and drop those frames.
"""
import json
import logging
import math
import struct
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from .config import clamp_field
from .const import (
    AB_THRESHOLD_UUID,
    BRIGHTNESS_UUID,
    CALIBRATION_RESET_UUID,
    CALIBRATION_STATUS_UUID,
    CALIBRATION_UUID,
    COMMAND_RESET_CALIBRATION,
    COMMAND_SAVE_PRESET,
    COMMAND_START_CALIBRATION,
    END_COLOR_UUID,
    FIELD_BRIGHTNESS,
    FIELD_END_COLOR,
    FIELD_LED_COUNT,
    FIELD_MODE,
    FIELD_SPEED_MS,
    FIELD_START_COLOR,
    FIELD_THRESHOLD,
    MODE_UUID,
    NUM_LEDS_UUID,
    PONG_FRAME,
    SAVE_PRESET_UUID,
    SETTINGS_FIELDS,
    SOCKET_CHANNEL,
    SPEED_MS_UUID,
    START_COLOR_UUID,
    STATUS_UUID,
)
from .exceptions import DecodeError
from .models import (
    CalibrationMessage,
    CalibrationState,
    Command,
    DeviceStatus,
    Frame,
    InboundMessage,
    OutboundMessage,
    RGB8,
    SettingsMessage,
    StatusMessage,
)

_LOGGER = logging.getLogger(__name__)

TELEMETRY_STATUS = "status"
TELEMETRY_CALIBRATION = "calibration"

# 字段 -> 特征值 UUID；颜色为 3 字节 R,G,B
FIELD_CHANNELS = {
    FIELD_MODE: MODE_UUID,
    FIELD_START_COLOR: START_COLOR_UUID,
    FIELD_END_COLOR: END_COLOR_UUID,
    FIELD_SPEED_MS: SPEED_MS_UUID,
    FIELD_BRIGHTNESS: BRIGHTNESS_UUID,
    FIELD_LED_COUNT: NUM_LEDS_UUID,
    FIELD_THRESHOLD: AB_THRESHOLD_UUID,
}
FIELD_FORMATS = {
    FIELD_MODE: "<B",
    FIELD_SPEED_MS: "<H",
    FIELD_BRIGHTNESS: "<B",
    FIELD_LED_COUNT: "<H",
    FIELD_THRESHOLD: "<B",
}
_CHANNEL_FIELDS = {uuid: name for name, uuid in FIELD_CHANNELS.items()}

COMMAND_CHANNELS = {
    COMMAND_SAVE_PRESET: SAVE_PRESET_UUID,
    COMMAND_START_CALIBRATION: CALIBRATION_UUID,
    COMMAND_RESET_CALIBRATION: CALIBRATION_RESET_UUID,
}

# JSON 键名与固件保持一致
WIRE_KEYS = {
    FIELD_MODE: "mode",
    FIELD_START_COLOR: "startColor",
    FIELD_END_COLOR: "endColor",
    FIELD_SPEED_MS: "speedMs",
    FIELD_BRIGHTNESS: "brightness",
    FIELD_LED_COUNT: "numLeds",
    FIELD_THRESHOLD: "abThreshold",
}
_FIELDS_BY_WIRE_KEY = {key: name for name, key in WIRE_KEYS.items()}

_EXTENDED_STATUS_KEYS = {
    "signalValid": ("signal_valid", bool),
    "pulseCount": ("pulse_count", int),
    "invalidPulseCount": ("invalid_pulse_count", int),
    "calibrating": ("calibrating", bool),
    "calibrationComplete": ("calibration_complete", bool),
    "minPulse": ("min_pulse", int),
    "maxPulse": ("max_pulse", int),
    "pulseRange": ("pulse_range", int),
}

CALIBRATION_RECORD_MIN = 5
CALIBRATION_RECORD_PROGRESS = 7


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def status_from_json(obj: Any) -> DeviceStatus:
    """Build a DeviceStatus from a decoded `{"thr": float, "mode": int}` object."""
    if not isinstance(obj, dict):
        raise DecodeError(f"status is not an object: {obj!r}")
    throttle = obj.get("thr")
    mode = obj.get("mode")
    if not _is_number(throttle) or not _is_number(mode):
        raise DecodeError(f"status missing thr/mode: {obj!r}")

    extra = {}
    for key, (name, kind) in _EXTENDED_STATUS_KEYS.items():
        if key not in obj:
            continue
        value = obj[key]
        if kind is bool and isinstance(value, (bool, int)):
            extra[name] = bool(value)
        elif kind is int and _is_number(value):
            extra[name] = int(value)
    return DeviceStatus(throttle=max(0.0, min(1.0, float(throttle))), mode=int(mode), **extra)


def decode_calibration(data: bytes) -> CalibrationState:
    """Decode `[isCalibrated, minLo, minHi, maxLo, maxHi, (minVisits, maxVisits)?]`."""
    if len(data) < CALIBRATION_RECORD_MIN:
        raise DecodeError(f"calibration record too short: {bytes(data).hex()}")
    minimum, maximum = struct.unpack_from("<HH", data, 1)
    min_visits = max_visits = 0
    if len(data) >= CALIBRATION_RECORD_PROGRESS:
        min_visits, max_visits = data[5], data[6]
    return CalibrationState(
        is_calibrated=data[0] == 1,
        min=minimum,
        max=maximum,
        min_visits=min_visits,
        max_visits=max_visits,
    )


class WireCodec(ABC):
    """Translate application messages to and from one transport's frames."""

    #: logical telemetry stream -> transport channel it arrives on
    telemetry_channels: Dict[str, str] = {}

    @abstractmethod
    def encode(self, message: OutboundMessage) -> List[Frame]:
        """Return the frames to write, in order."""

    @abstractmethod
    def decode(self, channel: str, payload: Union[bytes, str]) -> Optional[InboundMessage]:
        """Decode one inbound unit; None means "not for us"."""


class PacketCodec(WireCodec):
    """One characteristic per field, raw little-endian bytes."""

    telemetry_channels = {
        TELEMETRY_STATUS: STATUS_UUID,
        TELEMETRY_CALIBRATION: CALIBRATION_STATUS_UUID,
    }
    settings_channels = FIELD_CHANNELS

    def encode_field(self, field: str, value: Any) -> bytes:
        if field in (FIELD_START_COLOR, FIELD_END_COLOR):
            return RGB8(*value).to_bytes()
        return struct.pack(FIELD_FORMATS[field], clamp_field(field, value))

    def decode_field(self, field: str, data: bytes) -> Any:
        if field in (FIELD_START_COLOR, FIELD_END_COLOR):
            if len(data) < 3:
                raise DecodeError(f"{field} needs 3 bytes, got {len(data)}")
            return RGB8.from_bytes(data)
        fmt = FIELD_FORMATS[field]
        if len(data) < struct.calcsize(fmt):
            raise DecodeError(f"{field} needs {struct.calcsize(fmt)} bytes, got {len(data)}")
        return struct.unpack_from(fmt, data)[0]

    def encode(self, message: OutboundMessage) -> List[Frame]:
        if isinstance(message, Command):
            channel = COMMAND_CHANNELS.get(message.name)
            if channel is None:
                raise ValueError(f"unknown command {message.name}")
            return [Frame(channel, b"\x01", message.name)]

        frames = []
        # 按固定顺序逐个字段写入
        for field in SETTINGS_FIELDS:
            if field in message.fields:
                payload = self.encode_field(field, message.fields[field])
                frames.append(Frame(FIELD_CHANNELS[field], payload, field))
        return frames

    def decode(self, channel: str, payload: Union[bytes, str]) -> Optional[InboundMessage]:
        data = payload.encode() if isinstance(payload, str) else bytes(payload)
        if channel == STATUS_UUID:
            return StatusMessage(self.decode_status(data))
        if channel == CALIBRATION_STATUS_UUID:
            return CalibrationMessage(decode_calibration(data))
        field = _CHANNEL_FIELDS.get(channel)
        if field is not None:
            return SettingsMessage({field: self.decode_field(field, data)})
        return None

    def decode_status(self, data: bytes) -> DeviceStatus:
        if not data:
            raise DecodeError("empty status payload")
        try:
            text = data.decode("utf-8").strip()
        except UnicodeDecodeError as err:
            raise DecodeError(f"status is not UTF-8: {data.hex()}") from err
        try:
            obj = json.loads(text)
        except ValueError as err:
            # 固件偶尔截断末尾的 '}'，补一次再试
            if '"thr"' in text and '"mode"' in text and not text.endswith("}"):
                try:
                    obj = json.loads(text + "}")
                except ValueError:
                    raise DecodeError(f"malformed status JSON: {text!r}") from err
            else:
                raise DecodeError(f"malformed status JSON: {text!r}") from err
        return status_from_json(obj)


class SocketCodec(WireCodec):
    """Single JSON object per WebSocket text frame."""

    telemetry_channels = {TELEMETRY_STATUS: SOCKET_CHANNEL}

    def encode(self, message: OutboundMessage) -> List[Frame]:
        if isinstance(message, Command):
            body = {"type": "command", "command": message.name}
            return [Frame(SOCKET_CHANNEL, self._dumps(body), message.name)]

        body = {}
        for field in SETTINGS_FIELDS:
            if field not in message.fields:
                continue
            value = message.fields[field]
            if field in (FIELD_START_COLOR, FIELD_END_COLOR):
                body[WIRE_KEYS[field]] = list(RGB8(*value))
            else:
                body[WIRE_KEYS[field]] = clamp_field(field, value)
        if not body:
            return []
        return [Frame(SOCKET_CHANNEL, self._dumps(body), "settings")]

    def decode(self, channel: str, payload: Union[bytes, str]) -> Optional[InboundMessage]:
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as err:
                raise DecodeError("socket frame is not UTF-8") from err
        text = payload.strip()
        if text == PONG_FRAME:
            _LOGGER.debug("Pong received from device")
            return None
        try:
            obj = json.loads(text)
        except ValueError as err:
            raise DecodeError(f"malformed JSON frame: {text!r}") from err
        if not isinstance(obj, dict):
            raise DecodeError(f"frame is not an object: {text!r}")

        kind = obj.get("type")
        if kind == "status":
            return StatusMessage(status_from_json(obj))
        if kind == "settings":
            fields = {_FIELDS_BY_WIRE_KEY[key]: value for key, value in obj.items() if key in _FIELDS_BY_WIRE_KEY}
            return SettingsMessage(fields)
        _LOGGER.debug(f"Ignoring frame of type {kind!r}")
        return None

    @staticmethod
    def _dumps(body: Dict[str, Any]) -> str:
        return json.dumps(body, separators=(",", ":"))
