"""Configuration and settings validation schemas."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import voluptuous as vol

from .const import (
    BRIGHTNESS_RANGE,
    CONNECT_TIMEOUT,
    DEVICE_IP,
    DEVICE_NAME,
    FIELD_BRIGHTNESS,
    FIELD_END_COLOR,
    FIELD_RANGES,
    FIELD_LED_COUNT,
    FIELD_MODE,
    FIELD_SPEED_MS,
    FIELD_START_COLOR,
    FIELD_THRESHOLD,
    HEALTH_CHECK_TIMEOUT,
    KEEP_ALIVE_INTERVAL,
    LED_COUNT_RANGE,
    MODE_RANGE,
    RETRY_ATTEMPTS,
    RETRY_DELAY,
    SCAN_TIMEOUT,
    SPEED_MS_RANGE,
    THRESHOLD_RANGE,
    TRANSPORT_BLE,
    TRANSPORT_SOCKET,
    WEBSOCKET_PATH,
    WEBSOCKET_PORT,
)
from .exceptions import InvalidValueError
from .models import RGB8

CONF_TRANSPORT = "transport"
CONF_NAME = "name"
CONF_MAC = "mac"
CONF_HOST = "host"
CONF_PORT = "port"
CONF_PATH = "path"
CONF_SCAN_TIMEOUT = "scan_timeout"
CONF_CONNECT_TIMEOUT = "connect_timeout"
CONF_RETRY_ATTEMPTS = "retry_attempts"
CONF_RETRY_DELAY = "retry_delay"
CONF_KEEP_ALIVE_INTERVAL = "keep_alive_interval"
CONF_HEALTH_CHECK_TIMEOUT = "health_check_timeout"


def is_valid_mac(mac: str) -> bool:
    """验证MAC地址格式"""
    if not isinstance(mac, str):
        return False
    mac_clean = mac.upper().replace(":", "").replace("-", "")
    return len(mac_clean) == 12 and all(c in "0123456789ABCDEF" for c in mac_clean)


def mac_address(value: Any) -> str:
    if not is_valid_mac(value):
        raise vol.Invalid(f"invalid MAC address: {value}")
    return value.upper()


def _seconds(minimum: float):
    return vol.All(vol.Coerce(float), vol.Range(min=minimum))


CONFIG_SCHEMA = vol.Schema({
    vol.Required(CONF_TRANSPORT, default=TRANSPORT_BLE): vol.In([TRANSPORT_BLE, TRANSPORT_SOCKET]),
    vol.Optional(CONF_NAME, default=DEVICE_NAME): vol.All(str, vol.Length(min=1)),
    vol.Optional(CONF_MAC): mac_address,
    vol.Optional(CONF_HOST, default=DEVICE_IP): vol.All(str, vol.Length(min=1)),
    vol.Optional(CONF_PORT, default=WEBSOCKET_PORT): vol.All(vol.Coerce(int), vol.Range(min=1, max=65535)),
    vol.Optional(CONF_PATH, default=WEBSOCKET_PATH): str,
    vol.Optional(CONF_SCAN_TIMEOUT, default=SCAN_TIMEOUT): _seconds(0.01),
    vol.Optional(CONF_CONNECT_TIMEOUT, default=CONNECT_TIMEOUT): _seconds(0.01),
    vol.Optional(CONF_RETRY_ATTEMPTS, default=RETRY_ATTEMPTS): vol.All(vol.Coerce(int), vol.Range(min=0, max=50)),
    vol.Optional(CONF_RETRY_DELAY, default=RETRY_DELAY): _seconds(0.0),
    vol.Optional(CONF_KEEP_ALIVE_INTERVAL, default=KEEP_ALIVE_INTERVAL): _seconds(0.01),
    vol.Optional(CONF_HEALTH_CHECK_TIMEOUT, default=HEALTH_CHECK_TIMEOUT): _seconds(0.01),
})


@dataclass(frozen=True)
class SessionConfig:
    """Validated connection options."""

    transport: str = TRANSPORT_BLE
    name: str = DEVICE_NAME
    mac: Optional[str] = None
    host: str = DEVICE_IP
    port: int = WEBSOCKET_PORT
    path: str = WEBSOCKET_PATH
    scan_timeout: float = SCAN_TIMEOUT
    connect_timeout: float = CONNECT_TIMEOUT
    retry_attempts: int = RETRY_ATTEMPTS
    retry_delay: float = RETRY_DELAY
    keep_alive_interval: float = KEEP_ALIVE_INTERVAL
    health_check_timeout: float = HEALTH_CHECK_TIMEOUT

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]] = None) -> "SessionConfig":
        """Validate a plain mapping; raises voluptuous.Invalid on bad input."""
        validated = CONFIG_SCHEMA(dict(data or {}))
        return cls(**validated)


def rgb8(value: Any) -> RGB8:
    """Accept an RGB8, a 3-tuple/list or an {r, g, b} mapping."""
    if isinstance(value, dict):
        try:
            value = (value["r"], value["g"], value["b"])
        except KeyError as err:
            raise vol.Invalid(f"missing color component {err}") from err
    if not isinstance(value, (tuple, list)) or len(value) != 3:
        raise vol.Invalid(f"color must have three components: {value!r}")
    for component in value:
        if isinstance(component, bool) or not isinstance(component, int) or not 0 <= component <= 255:
            raise vol.Invalid(f"color component out of range: {component!r}")
    return RGB8(*value)


def _strict_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise vol.Invalid(f"expected integer, got {value!r}")
    return int(value)


def _ranged(bounds):
    return vol.All(_strict_int, vol.Range(min=bounds[0], max=bounds[1]))


FIELD_VALIDATORS = {
    FIELD_MODE: _ranged(MODE_RANGE),
    FIELD_START_COLOR: rgb8,
    FIELD_END_COLOR: rgb8,
    FIELD_SPEED_MS: _ranged(SPEED_MS_RANGE),
    FIELD_BRIGHTNESS: _ranged(BRIGHTNESS_RANGE),
    FIELD_LED_COUNT: _ranged(LED_COUNT_RANGE),
    FIELD_THRESHOLD: _ranged(THRESHOLD_RANGE),
}

SETTINGS_SCHEMA = vol.Schema({vol.Optional(key): validator for key, validator in FIELD_VALIDATORS.items()})


def validate_settings(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a partial settings mapping, raising InvalidValueError."""
    try:
        return SETTINGS_SCHEMA(dict(partial))
    except vol.MultipleInvalid as err:
        first = err.errors[0]
        field = str(first.path[0]) if first.path else None
        raise InvalidValueError(f"invalid value for {field}: {first.msg}", field=field) from err


def clamp_field(field: str, value: int) -> int:
    """Clamp a numeric settings value into its documented range."""
    low, high = FIELD_RANGES[field]
    return max(low, min(high, int(value)))
