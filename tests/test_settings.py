"""
Tests for the settings synchronizer: cache, validation, pushes and hardware detection.
"""

import json
import struct

import pytest

from afterburner.const import (
    AB_THRESHOLD_UUID,
    BRIGHTNESS_UUID,
    END_COLOR_UUID,
    HARDWARE_VERSION_UUID,
    MODE_UUID,
    NUM_LEDS_UUID,
    SAVE_PRESET_UUID,
    SOCKET_CHANNEL,
    SPEED_MS_UUID,
    START_COLOR_UUID,
)
from afterburner.exceptions import InvalidValueError, NotConnectedError, TransportRejectedError
from afterburner.models import RGB8, ConnectionState, HardwareType, Settings

from conftest import device_settings_reads, wait_until


class TestLocalCache:
    """apply_local / read_cached without a connection."""

    def test_defaults(self, packet_controller):
        assert packet_controller.read_cached() == Settings()
        assert packet_controller.read_cached().start_color == RGB8(255, 100, 0)

    @pytest.mark.parametrize("partial", [
        {"mode": 0},
        {"mode": 2},
        {"start_color": (0, 0, 0)},
        {"end_color": (255, 255, 255)},
        {"speed_ms": 100},
        {"speed_ms": 5000},
        {"brightness": 10},
        {"brightness": 255},
        {"led_count": 1},
        {"led_count": 300},
        {"afterburner_threshold_pct": 0},
        {"afterburner_threshold_pct": 100},
    ])
    def test_round_trip(self, packet_controller, partial):
        packet_controller.apply_local(partial)
        cached = packet_controller.read_cached().as_dict()
        for key, value in partial.items():
            assert cached[key] == value

    @pytest.mark.parametrize("partial", [
        {"speed_ms": 99},
        {"brightness": 300},
        {"led_count": 0},
        {"afterburner_threshold_pct": 101},
        {"brightness": 100, "mode": 7},
    ])
    def test_out_of_range_leaves_cache_unchanged(self, packet_controller, partial):
        before = packet_controller.read_cached()
        with pytest.raises(InvalidValueError):
            packet_controller.apply_local(partial)
        assert packet_controller.read_cached() == before

    def test_observers_see_every_change(self, packet_controller):
        seen = []
        unsubscribe = packet_controller.subscribe_settings(seen.append)
        packet_controller.apply_local({"brightness": 50})
        packet_controller.apply_local({"brightness": 50})
        unsubscribe()
        packet_controller.apply_local({"brightness": 60})
        assert [settings.brightness for settings in seen] == [50]

    def test_device_settings_overwrite_cache(self, packet_controller):
        packet_controller.apply_local({"brightness": 50})
        packet_controller.settings.on_device_settings({
            "brightness": 400,        # clamped
            "speed_ms": "fast",       # rejected, keeps previous value
            "start_color": [9, 8, 7],
            "end_color": [1, 2],      # rejected
        })
        cached = packet_controller.read_cached()
        assert cached.brightness == 255
        assert cached.speed_ms == 1200
        assert cached.start_color == RGB8(9, 8, 7)
        assert cached.end_color == RGB8(154, 0, 255)

    def test_non_finite_device_values_keep_cache(self, packet_controller):
        packet_controller.apply_local({"brightness": 50})
        packet_controller.settings.on_device_settings({"brightness": float("nan"), "speed_ms": float("inf")})
        cached = packet_controller.read_cached()
        assert cached.brightness == 50
        assert cached.speed_ms == 1200

    @pytest.mark.asyncio
    async def test_push_requires_connection(self, packet_controller):
        with pytest.raises(NotConnectedError):
            await packet_controller.push_all()


class TestPacketPush:
    """Full and partial pushes over the packet transport."""

    @pytest.mark.asyncio
    async def test_device_settings_read_on_connect(self, packet_controller):
        assert await packet_controller.connect() is ConnectionState.READY
        cached = packet_controller.read_cached()
        assert cached.mode == 2
        assert cached.start_color == RGB8(10, 20, 30)
        assert cached.speed_ms == 800
        assert cached.led_count == 60
        assert cached.afterburner_threshold_pct == 50
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_unreadable_field_keeps_cache(self, packet_controller, fake_transport):
        del fake_transport.reads[BRIGHTNESS_UUID]
        await packet_controller.connect()
        assert packet_controller.read_cached().brightness == 200
        assert packet_controller.read_cached().speed_ms == 800
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_full_push_order_and_save(self, packet_controller, fake_transport):
        await packet_controller.connect()
        fake_transport.writes.clear()

        result = await packet_controller.push_all()

        assert result.ok
        assert result.saved
        assert fake_transport.written_channels() == [
            MODE_UUID, START_COLOR_UUID, END_COLOR_UUID, SPEED_MS_UUID,
            BRIGHTNESS_UUID, NUM_LEDS_UUID, AB_THRESHOLD_UUID, SAVE_PRESET_UUID,
        ]
        assert dict(fake_transport.writes)[SPEED_MS_UUID] == struct.pack("<H", 800)
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_partial_failure_does_not_roll_back(self, packet_controller, fake_transport):
        await packet_controller.connect()
        fake_transport.writes.clear()
        fake_transport.write_errors[END_COLOR_UUID] = TransportRejectedError("GATT error")

        result = await packet_controller.push_all()

        assert not result.ok
        assert not result.saved
        assert list(result.failed) == ["end_color"]
        assert "start_color" in result.written
        assert "afterburner_threshold_pct" in result.written
        assert END_COLOR_UUID not in fake_transport.written_channels()
        assert SAVE_PRESET_UUID not in fake_transport.written_channels()
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_new_hardware_skips_led_count(self, packet_controller, fake_transport):
        fake_transport.reads[HARDWARE_VERSION_UUID] = bytes([2])
        await packet_controller.connect()
        assert packet_controller.get_hardware_info().type is HardwareType.NEW
        assert packet_controller.get_hardware_info().total_leds == 36
        fake_transport.writes.clear()

        result = await packet_controller.push_all(save=False)

        assert "led_count" not in result.written
        assert NUM_LEDS_UUID not in fake_transport.written_channels()
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_push_changes(self, packet_controller, fake_transport):
        await packet_controller.connect()
        fake_transport.writes.clear()

        result = await packet_controller.push_changes({"brightness": 99})

        assert result.written == ["brightness"]
        assert fake_transport.writes == [(BRIGHTNESS_UUID, bytes([99]))]
        assert packet_controller.read_cached().brightness == 99
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_push_changes_rejects_invalid_value(self, packet_controller, fake_transport):
        await packet_controller.connect()
        fake_transport.writes.clear()
        with pytest.raises(InvalidValueError):
            await packet_controller.push_changes({"brightness": 5})
        assert fake_transport.writes == []
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_settings_persist_across_disconnect(self, packet_controller, fake_transport):
        await packet_controller.connect()
        await packet_controller.disconnect()
        assert packet_controller.read_cached().speed_ms == 800


class TestHardwareDetection:

    @pytest.mark.asyncio
    async def test_legacy_by_version(self, packet_controller):
        await packet_controller.connect()
        assert packet_controller.get_hardware_info().type is HardwareType.LEGACY
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("led_count,expected", [
        (36, HardwareType.NEW),
        (0, HardwareType.NEW),
        (60, HardwareType.LEGACY),
        (301, HardwareType.NEW),
    ])
    async def test_fallback_to_led_count(self, packet_controller, fake_transport, led_count, expected):
        fake_transport.reads.update(device_settings_reads(led_count=led_count, hardware_version=None))
        fake_transport.reads.pop(HARDWARE_VERSION_UUID, None)
        await packet_controller.connect()
        assert packet_controller.get_hardware_info().type is expected
        await packet_controller.disconnect()

    @pytest.mark.asyncio
    async def test_socket_devices_are_legacy(self, socket_controller):
        await socket_controller.connect()
        assert socket_controller.get_hardware_info().type is HardwareType.LEGACY
        await socket_controller.disconnect()


class TestSocketSync:
    """Settings over the JSON socket."""

    @pytest.mark.asyncio
    async def test_device_push_overwrites_cache(self, socket_controller, socket_transport):
        await socket_controller.connect()
        socket_transport.inject(SOCKET_CHANNEL, json.dumps({
            "type": "settings", "mode": 0, "startColor": [1, 2, 3], "endColor": [4, 5, 6],
            "speedMs": 700, "brightness": 90, "numLeds": 20, "abThreshold": 10,
        }))
        cached = socket_controller.read_cached()
        assert cached == Settings(0, RGB8(1, 2, 3), RGB8(4, 5, 6), 700, 90, 20, 10)
        await socket_controller.disconnect()

    @pytest.mark.asyncio
    async def test_full_push_is_one_frame_then_save(self, socket_controller, socket_transport):
        await socket_controller.connect()

        result = await socket_controller.push_all()

        assert result.ok
        assert len(socket_transport.writes) == 2
        body = json.loads(socket_transport.writes[0][1])
        assert set(body) == {"mode", "startColor", "endColor", "speedMs", "brightness", "numLeds", "abThreshold"}
        assert json.loads(socket_transport.writes[1][1]) == {"type": "command", "command": "save_preset"}
        assert len(result.written) == 7
        await socket_controller.disconnect()

    @pytest.mark.asyncio
    async def test_push_while_reconnecting(self, socket_controller, socket_transport):
        await socket_controller.connect()
        socket_transport.drop()
        await wait_until(lambda: socket_controller.current_state() is not ConnectionState.READY)
        with pytest.raises(NotConnectedError):
            await socket_controller.push_all()
        await socket_controller.disconnect()
