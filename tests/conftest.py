"""
Pytest configuration and fixtures for afterburner tests.

`FakeTransport` is a scripted in-memory transport: queue scan/connect
outcomes, preload characteristic values, record writes, inject inbound
frames and simulate link drops.
"""

import asyncio
import struct
from typing import Dict, List, Optional, Tuple, Union

import pytest

from afterburner.codec import PacketCodec, SocketCodec
from afterburner.config import SessionConfig
from afterburner.const import (
    AB_THRESHOLD_UUID,
    BRIGHTNESS_UUID,
    END_COLOR_UUID,
    HARDWARE_VERSION_UUID,
    MODE_UUID,
    NUM_LEDS_UUID,
    SPEED_MS_UUID,
    START_COLOR_UUID,
)
from afterburner.controller import AfterburnerController
from afterburner.exceptions import NotConnectedError, TransportRejectedError
from afterburner.models import ConnectionState, DeviceHandle
from afterburner.transport import Transport

# Outcome that never completes; the session's own timeout must fire.
HANG = object()


class FakeTransport(Transport):
    """In-memory transport driven by the test."""

    name = "fake"

    def __init__(self, supports_read: bool = True):
        super().__init__()
        self.supports_read = supports_read
        self.handle = DeviceHandle(identifier="fake-1", name="ABurner", address="AA:BB:CC:DD:EE:FF")
        self.scan_results: list = []
        self.connect_results: list = []
        self.reads: Dict[str, bytes] = {}
        self.write_errors: Dict[str, Exception] = {}
        self.writes: List[Tuple[str, Union[bytes, str]]] = []
        self.notifying: set = set()
        self.start_notify_calls: List[str] = []
        self.stop_notify_calls: List[str] = []
        self.ping_error: Optional[Exception] = None
        self.ping_hang = False
        self.connected = False
        self.scan_calls = 0
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.ping_calls = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def scan(self, timeout: float) -> Optional[DeviceHandle]:
        self.scan_calls += 1
        outcome = self.scan_results.pop(0) if self.scan_results else self.handle
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def connect(self, handle: DeviceHandle, timeout: float) -> None:
        self.connect_calls += 1
        outcome = self.connect_results.pop(0) if self.connect_results else None
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, Exception):
            raise outcome
        self.notifying.clear()
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self.notifying.clear()

    async def write(self, channel: str, payload: Union[bytes, str]) -> None:
        if not self.connected:
            raise NotConnectedError("fake transport is not connected")
        error = self.write_errors.get(channel)
        if error is not None:
            raise error
        self.writes.append((channel, payload))

    async def read(self, channel: str) -> bytes:
        if not self.connected:
            raise NotConnectedError("fake transport is not connected")
        if channel not in self.reads:
            raise TransportRejectedError(f"no value for {channel}")
        return self.reads[channel]

    async def start_notify(self, channel: str) -> None:
        self.start_notify_calls.append(channel)
        self.notifying.add(channel)

    async def stop_notify(self, channel: str) -> None:
        self.stop_notify_calls.append(channel)
        self.notifying.discard(channel)

    async def ping(self) -> None:
        self.ping_calls += 1
        if self.ping_hang:
            await asyncio.sleep(3600)
        if self.ping_error is not None:
            raise self.ping_error

    # helpers used by tests

    def drop(self) -> None:
        """Simulate the device going away."""
        self.connected = False
        self.notifying.clear()
        self._notify_disconnected()

    def inject(self, channel: str, payload: Union[bytes, str]) -> None:
        self._dispatch(channel, payload)

    def written_channels(self) -> List[str]:
        return [channel for channel, _payload in self.writes]


def device_settings_reads(mode=2, start=(10, 20, 30), end=(40, 50, 60), speed=800, brightness=120,
                          led_count=60, threshold=50, hardware_version=1) -> Dict[str, bytes]:
    """Characteristic values for a legacy device with known settings."""
    reads = {
        MODE_UUID: bytes([mode]),
        START_COLOR_UUID: bytes(start),
        END_COLOR_UUID: bytes(end),
        SPEED_MS_UUID: struct.pack("<H", speed),
        BRIGHTNESS_UUID: bytes([brightness]),
        NUM_LEDS_UUID: struct.pack("<H", led_count),
        AB_THRESHOLD_UUID: bytes([threshold]),
    }
    if hardware_version is not None:
        reads[HARDWARE_VERSION_UUID] = bytes([hardware_version])
    return reads


async def wait_for_state(session, state: ConnectionState, timeout: float = 2.0) -> None:
    """Poll until `session` reaches `state`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.current_state() is not state:
        if loop.time() > deadline:
            raise AssertionError(f"state is {session.current_state()}, expected {state}")
        await asyncio.sleep(0.01)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fast_config():
    """Short timers so timer-driven scenarios finish quickly."""
    return SessionConfig(
        scan_timeout=0.2,
        connect_timeout=0.2,
        retry_attempts=3,
        retry_delay=0.01,
        keep_alive_interval=60.0,
        health_check_timeout=0.1,
    )


@pytest.fixture
def fake_transport():
    transport = FakeTransport()
    transport.reads.update(device_settings_reads())
    return transport


@pytest.fixture
def packet_controller(fake_transport, fast_config):
    return AfterburnerController(fake_transport, PacketCodec(), fast_config)


@pytest.fixture
def socket_transport():
    return FakeTransport(supports_read=False)


@pytest.fixture
def socket_controller(socket_transport, fast_config):
    return AfterburnerController(socket_transport, SocketCodec(), fast_config)
