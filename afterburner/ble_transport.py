"""BLE packet transport built on bleak."""
import asyncio
import logging
from typing import Dict, Optional, Union

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .const import DEVICE_NAME, MODE_UUID, SERVICE_UUID
from .exceptions import ConnectTimeoutError, NotConnectedError, TransportRejectedError
from .models import DeviceHandle
from .transport import Transport

_LOGGER = logging.getLogger(__name__)


class BLETransport(Transport):
    """控制与 Afterburner BLE 设备的连接和特征值读写"""

    name = "ble"
    supports_read = True

    def __init__(self, device_name: str = DEVICE_NAME, device_address: Optional[str] = None,
                 service_uuid: str = SERVICE_UUID):
        super().__init__()
        self.device_name = device_name
        self.device_address = device_address  # 指定 MAC 时按地址查找
        self.service_uuid = service_uuid
        self.client: Optional[BleakClient] = None
        self._notifying: Dict[str, bool] = {}
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected

    async def scan(self, timeout: float) -> Optional[DeviceHandle]:
        """扫描设备是否在范围内"""
        target = self.device_address or self.device_name
        _LOGGER.info(f"Scanning for {target} (timeout {timeout}s)")
        try:
            if self.device_address:
                device = await BleakScanner.find_device_by_address(self.device_address, timeout=timeout)
            else:
                device = await BleakScanner.find_device_by_name(self.device_name, timeout=timeout)
        except (BleakError, OSError) as e:
            raise TransportRejectedError(f"BLE scan failed: {e}") from e

        if device is None:
            _LOGGER.warning(f"Scan finished without finding {target}")
            return None

        _LOGGER.info(f"Found {device.name} ({device.address})")
        return DeviceHandle(
            identifier=device.address,
            name=device.name or self.device_name,
            address=device.address,
            native=device,
        )

    async def connect(self, handle: DeviceHandle, timeout: float) -> None:
        """连接到BLE设备并确认服务存在"""
        # 确保清理旧的连接状态
        await self._cleanup_client()
        self._closing = False

        self.client = BleakClient(
            handle.native or handle.address,
            disconnected_callback=self._on_disconnected,
            timeout=timeout,
        )
        _LOGGER.debug(f"Connecting to {handle.address}")
        try:
            await self.client.connect()
        except asyncio.TimeoutError as e:
            await self._cleanup_client()
            raise ConnectTimeoutError(f"Connection to {handle.address} timed out") from e
        except (BleakError, OSError) as e:
            await self._cleanup_client()
            raise TransportRejectedError(f"Connection to {handle.address} failed: {e}") from e

        if not self.client.is_connected:
            await self._cleanup_client()
            raise TransportRejectedError(f"Connection to {handle.address} was not established")

        # 握手：服务必须存在
        if self.client.services.get_service(self.service_uuid) is None:
            await self._cleanup_client()
            raise TransportRejectedError(f"Service {self.service_uuid} not found on {handle.address}")

        _LOGGER.info(f"Connected to {handle.name} ({handle.address})")

    async def disconnect(self) -> None:
        self._closing = True
        await self._cleanup_client()

    async def _cleanup_client(self) -> None:
        """内部清理客户端资源"""
        self._notifying.clear()
        client, self.client = self.client, None
        if client is None:
            return
        try:
            # 尝试断开连接，无论当前状态如何
            await client.disconnect()
        except Exception as e:
            _LOGGER.debug(f"Error while releasing BLE client: {e}")

    def _on_disconnected(self, client: BleakClient) -> None:
        """连接断开时的回调处理"""
        if self._closing or client is not self.client:
            return
        _LOGGER.warning(f"Connection to {client.address} lost unexpectedly")
        self._notifying.clear()
        self._notify_disconnected()

    def _require_client(self) -> BleakClient:
        if not self.is_connected:
            raise NotConnectedError("BLE device is not connected")
        return self.client

    async def write(self, channel: str, payload: Union[bytes, str]) -> None:
        client = self._require_client()
        data = payload.encode() if isinstance(payload, str) else bytes(payload)
        try:
            await client.write_gatt_char(channel, data, response=True)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise TransportRejectedError(f"Write to {channel} failed: {e}") from e
        _LOGGER.debug(f"Wrote {data.hex()} to {channel}")

    async def read(self, channel: str) -> bytes:
        client = self._require_client()
        try:
            return bytes(await client.read_gatt_char(channel))
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise TransportRejectedError(f"Read from {channel} failed: {e}") from e

    async def start_notify(self, channel: str) -> None:
        client = self._require_client()
        if self._notifying.get(channel):
            return

        def handler(_sender, data: bytearray, channel=channel) -> None:
            self._dispatch(channel, bytes(data))

        try:
            await client.start_notify(channel, handler)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise TransportRejectedError(f"Subscribing to {channel} failed: {e}") from e
        self._notifying[channel] = True
        _LOGGER.debug(f"Subscribed to notifications on {channel}")

    async def stop_notify(self, channel: str) -> None:
        if not self._notifying.pop(channel, False) or not self.is_connected:
            return
        try:
            await self.client.stop_notify(channel)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            _LOGGER.debug(f"Stopping notifications on {channel} failed: {e}")

    async def ping(self) -> None:
        # 读取模式特征值作为心跳
        await self.read(MODE_UUID)
