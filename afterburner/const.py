"""Afterburner 控制器的常量定义"""
DOMAIN = "afterburner"
MANUFACTURER = "Afterburner"

# 设备广播名称
DEVICE_NAME = "ABurner"

# 传输方式
TRANSPORT_BLE = "ble"
TRANSPORT_SOCKET = "socket"

# BLE 服务与特征值 UUID
SERVICE_UUID = "b5f9a000-2b6c-4f6a-93b1-2f1f5f9ab000"
MODE_UUID = "b5f9a001-2b6c-4f6a-93b1-2f1f5f9ab001"
START_COLOR_UUID = "b5f9a002-2b6c-4f6a-93b1-2f1f5f9ab002"
END_COLOR_UUID = "b5f9a003-2b6c-4f6a-93b1-2f1f5f9ab003"
SPEED_MS_UUID = "b5f9a004-2b6c-4f6a-93b1-2f1f5f9ab004"
BRIGHTNESS_UUID = "b5f9a005-2b6c-4f6a-93b1-2f1f5f9ab005"
NUM_LEDS_UUID = "b5f9a006-2b6c-4f6a-93b1-2f1f5f9ab006"
AB_THRESHOLD_UUID = "b5f9a007-2b6c-4f6a-93b1-2f1f5f9ab007"
SAVE_PRESET_UUID = "b5f9a008-2b6c-4f6a-93b1-2f1f5f9ab008"
STATUS_UUID = "b5f9a009-2b6c-4f6a-93b1-2f1f5f9ab009"
CALIBRATION_UUID = "b5f9a010-2b6c-4f6a-93b1-2f1f5f9ab010"
CALIBRATION_STATUS_UUID = "b5f9a011-2b6c-4f6a-93b1-2f1f5f9ab011"
CALIBRATION_RESET_UUID = "b5f9a012-2b6c-4f6a-93b1-2f1f5f9ab012"
HARDWARE_VERSION_UUID = "b5f9a013-2b6c-4f6a-93b1-2f1f5f9ab013"

# WebSocket（设备 AP 模式下的固定地址）
DEVICE_IP = "192.168.4.1"
WEBSOCKET_PORT = 81
WEBSOCKET_PATH = "/"
SOCKET_CHANNEL = "ws"
PING_FRAME = "ping"
PONG_FRAME = "pong"

# 超时与重试（秒）
SCAN_TIMEOUT = 15.0
CONNECT_TIMEOUT = 10.0
RETRY_ATTEMPTS = 5
RETRY_DELAY = 2.0
KEEP_ALIVE_INTERVAL = 30.0
HEALTH_CHECK_TIMEOUT = 5.0

# 设置字段名
FIELD_MODE = "mode"
FIELD_START_COLOR = "start_color"
FIELD_END_COLOR = "end_color"
FIELD_SPEED_MS = "speed_ms"
FIELD_BRIGHTNESS = "brightness"
FIELD_LED_COUNT = "led_count"
FIELD_THRESHOLD = "afterburner_threshold_pct"

# 全量推送的固定写入顺序
SETTINGS_FIELDS = (
    FIELD_MODE,
    FIELD_START_COLOR,
    FIELD_END_COLOR,
    FIELD_SPEED_MS,
    FIELD_BRIGHTNESS,
    FIELD_LED_COUNT,
    FIELD_THRESHOLD,
)

# 数值字段范围 (min, max)
MODE_RANGE = (0, 2)
SPEED_MS_RANGE = (100, 5000)
BRIGHTNESS_RANGE = (10, 255)
LED_COUNT_RANGE = (1, 300)
THRESHOLD_RANGE = (0, 100)

FIELD_RANGES = {
    FIELD_MODE: MODE_RANGE,
    FIELD_SPEED_MS: SPEED_MS_RANGE,
    FIELD_BRIGHTNESS: BRIGHTNESS_RANGE,
    FIELD_LED_COUNT: LED_COUNT_RANGE,
    FIELD_THRESHOLD: THRESHOLD_RANGE,
}

# 首次连接前使用的默认设置
DEFAULT_MODE = 1
DEFAULT_START_COLOR = (255, 100, 0)
DEFAULT_END_COLOR = (154, 0, 255)
DEFAULT_SPEED_MS = 1200
DEFAULT_BRIGHTNESS = 200
DEFAULT_LED_COUNT = 45
DEFAULT_THRESHOLD = 80

# 油门校准默认值（微秒）
DEFAULT_THROTTLE_MIN = 900
DEFAULT_THROTTLE_MAX = 2000

# 新版硬件：4 路 MOSFET，共 36 颗 LED
NEW_HARDWARE_CHANNELS = 4
NEW_HARDWARE_LEDS = 36

# 命令
COMMAND_SAVE_PRESET = "save_preset"
COMMAND_START_CALIBRATION = "start_calibration"
COMMAND_RESET_CALIBRATION = "reset_calibration"

# 事件名称
EVENT_STATE_CHANGED = f"{DOMAIN}_state_changed"
EVENT_SETTINGS_UPDATED = f"{DOMAIN}_settings_updated"
EVENT_STATUS_UPDATED = f"{DOMAIN}_status_updated"
EVENT_CALIBRATION_UPDATED = f"{DOMAIN}_calibration_updated"
