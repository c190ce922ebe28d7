"""Data types shared by the Afterburner transport and sync layers."""
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, NamedTuple, Optional, Union

from .const import (
    DEFAULT_BRIGHTNESS,
    DEFAULT_END_COLOR,
    DEFAULT_LED_COUNT,
    DEFAULT_MODE,
    DEFAULT_SPEED_MS,
    DEFAULT_START_COLOR,
    DEFAULT_THRESHOLD,
    DEFAULT_THROTTLE_MAX,
    DEFAULT_THROTTLE_MIN,
    NEW_HARDWARE_CHANNELS,
    NEW_HARDWARE_LEDS,
)


class ConnectionState(Enum):
    """会话连接状态"""

    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Mode(IntEnum):
    """LED effect modes understood by the firmware."""

    LINEAR = 0
    EASE = 1
    PULSE = 2


class HardwareType(IntEnum):
    """Pixel strip (legacy) or 4-channel MOSFET ring (new)."""

    LEGACY = 1
    NEW = 2


class RGB8(NamedTuple):
    """An 8-bit RGB color, usable as a plain 3-tuple."""

    r: int
    g: int
    b: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "RGB8":
        return cls(data[0], data[1], data[2])

    def to_bytes(self) -> bytes:
        return bytes((self.r, self.g, self.b))


@dataclass(frozen=True)
class DeviceHandle:
    """A discovered device; `native` keeps the platform object (e.g. BLEDevice)."""

    identifier: str
    name: str
    address: str
    native: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Settings:
    """Last-known device configuration."""

    mode: int = DEFAULT_MODE
    start_color: RGB8 = RGB8(*DEFAULT_START_COLOR)
    end_color: RGB8 = RGB8(*DEFAULT_END_COLOR)
    speed_ms: int = DEFAULT_SPEED_MS
    brightness: int = DEFAULT_BRIGHTNESS
    led_count: int = DEFAULT_LED_COUNT
    afterburner_threshold_pct: int = DEFAULT_THRESHOLD

    def merge(self, partial: Dict[str, Any]) -> "Settings":
        return replace(self, **partial)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "start_color": self.start_color,
            "end_color": self.end_color,
            "speed_ms": self.speed_ms,
            "brightness": self.brightness,
            "led_count": self.led_count,
            "afterburner_threshold_pct": self.afterburner_threshold_pct,
        }


DEFAULT_SETTINGS = Settings()


@dataclass(frozen=True)
class DeviceStatus:
    """Throttle/mode snapshot; calibration telemetry fields are optional."""

    throttle: float
    mode: int
    signal_valid: Optional[bool] = None
    pulse_count: Optional[int] = None
    invalid_pulse_count: Optional[int] = None
    calibrating: Optional[bool] = None
    calibration_complete: Optional[bool] = None
    min_pulse: Optional[int] = None
    max_pulse: Optional[int] = None
    pulse_range: Optional[int] = None


@dataclass(frozen=True)
class CalibrationState:
    is_calibrated: bool = False
    min: int = DEFAULT_THROTTLE_MIN
    max: int = DEFAULT_THROTTLE_MAX
    min_visits: int = 0
    max_visits: int = 0


DEFAULT_CALIBRATION = CalibrationState()


@dataclass(frozen=True)
class HardwareInfo:
    type: HardwareType
    num_leds: Optional[int] = None
    num_channels: Optional[int] = None
    total_leds: Optional[int] = None

    @classmethod
    def new_hardware(cls) -> "HardwareInfo":
        return cls(HardwareType.NEW, num_channels=NEW_HARDWARE_CHANNELS, total_leds=NEW_HARDWARE_LEDS)


# 出站消息
@dataclass(frozen=True)
class SettingsWrite:
    """Outbound settings change; `full` marks a full push of every field."""

    fields: Dict[str, Any]
    full: bool = False


@dataclass(frozen=True)
class Command:
    name: str


# 入站消息
@dataclass(frozen=True)
class StatusMessage:
    status: DeviceStatus


@dataclass(frozen=True)
class SettingsMessage:
    """Settings pushed by the device; holds only the keys it sent."""

    fields: Dict[str, Any]


@dataclass(frozen=True)
class CalibrationMessage:
    calibration: CalibrationState


OutboundMessage = Union[SettingsWrite, Command]
InboundMessage = Union[StatusMessage, SettingsMessage, CalibrationMessage]


class Frame(NamedTuple):
    """One transport unit: a characteristic write or a socket text frame."""

    channel: str
    payload: Union[bytes, str]
    field: Optional[str] = None
