"""Tests for the esptool device link using a mocked loader."""

import hashlib
from unittest.mock import MagicMock, call

import pytest
import serial
from esptool.util import FatalError

from xteink_flasher.core.errors import DeviceIoError
from xteink_flasher.core.ota_partition import OtaImage
from xteink_flasher.models.registry import DeviceProfile, PartitionSpan, get_profile
from xteink_flasher.protocol import esp_link
from xteink_flasher.protocol.esp_link import EspConnection, EspDeviceLink, find_default_port
from xteink_flasher.protocol.progress import drive

TINY = DeviceProfile(
    name="tiny",
    description="Test layout",
    chip="esp32c3",
    flash_size=0x10000,
    otadata=PartitionSpan(0x2000, 0x2000),
    app0=PartitionSpan(0x4000, 0x6000),
    app1=PartitionSpan(0xA000, 0x6000),
)


def _esp(flash_write_size: int = 0x400) -> MagicMock:
    esp = MagicMock()
    esp.FLASH_WRITE_SIZE = flash_write_size
    esp.read_flash.side_effect = lambda address, size: b"\x5A" * size
    return esp


def _events(operation):
    events = []
    result = drive(operation, lambda unit, current, total: events.append((current, total)))
    return result, events


class TestReads:
    def test_read_otadata(self):
        esp = _esp()
        conn = EspConnection(esp, get_profile())

        ota, events = _events(conn.read_otadata_partition())

        assert isinstance(ota, OtaImage)
        assert len(ota.to_bytes()) == 0x2000
        esp.read_flash.assert_called_once_with(0xE000, 0x2000)
        assert events == [(0x2000, 0x2000)]

    def test_full_flash_read_is_block_wise(self):
        esp = _esp()
        conn = EspConnection(esp, TINY)

        data, events = _events(conn.read_full_flash())

        assert len(data) == 0x10000
        assert esp.read_flash.call_args_list == [call(a, 0x4000) for a in (0, 0x4000, 0x8000, 0xC000)]
        assert [current for current, _ in events] == [0x4000, 0x8000, 0xC000, 0x10000]

    def test_chunk_read_is_clamped_to_partition(self):
        esp = _esp()
        conn = EspConnection(esp, TINY)

        data, _ = _events(conn.read_app_partition_chunk("app1", 0x5000, 0x6400))

        assert len(data) == 0x1000
        esp.read_flash.assert_called_once_with(0xA000 + 0x5000, 0x1000)

    def test_chunk_read_past_partition_is_empty(self):
        esp = _esp()
        conn = EspConnection(esp, TINY)

        data, _ = _events(conn.read_app_partition_chunk("app0", 0x6000, 0x100))

        assert data == b""
        esp.read_flash.assert_not_called()

    @pytest.mark.parametrize("error", [FatalError("Timed out"), serial.SerialException("port gone"), OSError(5, "EIO")])
    def test_transport_errors_become_device_io_errors(self, error):
        esp = _esp()
        esp.read_flash.side_effect = error
        conn = EspConnection(esp, TINY)

        with pytest.raises(DeviceIoError) as exc_info:
            drive(conn.read_app_partition("app0"))
        assert exc_info.value.kind == "DeviceIoError"


class TestWrites:
    def test_last_block_is_padded(self):
        esp = _esp(flash_write_size=0x400)
        data = b"\x11" * 0x500
        esp.flash_md5sum.return_value = hashlib.md5(data).hexdigest()
        conn = EspConnection(esp, TINY)

        _, events = _events(conn.write_app_partition("app1", data))

        esp.flash_begin.assert_called_once_with(0x500, 0xA000)
        blocks = [c.args for c in esp.flash_block.call_args_list]
        assert [seq for _, seq in blocks] == [0, 1]
        assert blocks[0][0] == b"\x11" * 0x400
        assert blocks[1][0] == b"\x11" * 0x100 + b"\xFF" * 0x300
        assert events == [(0x400, 0x500), (0x500, 0x500)]
        esp.flash_md5sum.assert_called_once_with(0xA000, 0x500)

    def test_md5_mismatch(self):
        esp = _esp()
        esp.flash_md5sum.return_value = "0" * 32
        conn = EspConnection(esp, TINY)

        with pytest.raises(DeviceIoError, match="Verification failed"):
            drive(conn.write_app_partition("app0", b"\x22" * 16))

    def test_firmware_too_large(self):
        esp = _esp()
        conn = EspConnection(esp, TINY)

        with pytest.raises(DeviceIoError):
            drive(conn.write_app_partition("app0", b"\x00" * (0x6000 + 1)))
        esp.flash_begin.assert_not_called()

    def test_write_otadata(self):
        esp = _esp()
        ota = OtaImage(bytes(0x2000))
        ota.set_boot_partition("app1")
        esp.flash_md5sum.return_value = hashlib.md5(ota.to_bytes()).hexdigest()
        conn = EspConnection(esp, TINY)

        drive(conn.write_otadata_partition(ota))

        esp.flash_begin.assert_called_once_with(0x2000, 0x2000)

    def test_unknown_label(self):
        conn = EspConnection(_esp(), TINY)
        with pytest.raises(ValueError):
            drive(conn.read_app_partition("app9"))


class TestDisconnect:
    def test_reset_then_close(self):
        esp = _esp()
        conn = EspConnection(esp, TINY)

        conn.disconnect()
        conn.disconnect()

        esp.hard_reset.assert_called_once()
        esp._port.close.assert_called_once()

    def test_skip_reset(self):
        esp = _esp()
        EspConnection(esp, TINY).disconnect(skip_reset=True)

        esp.hard_reset.assert_not_called()
        esp._port.close.assert_called_once()

    def test_port_closed_even_if_reset_fails(self):
        esp = _esp()
        esp.hard_reset.side_effect = serial.SerialException("gone")
        conn = EspConnection(esp, TINY)

        with pytest.raises(DeviceIoError):
            conn.disconnect()
        esp._port.close.assert_called_once()
        assert conn.closed


class TestPortDiscovery:
    def test_picks_espressif_port(self, monkeypatch):
        ports = [MagicMock(vid=0x1A86, device="/dev/ttyUSB0"), MagicMock(vid=0x303A, device="/dev/ttyACM0")]
        monkeypatch.setattr(esp_link, "list_serial_ports", lambda: ports)

        assert find_default_port() == "/dev/ttyACM0"

    def test_no_device(self, monkeypatch):
        monkeypatch.setattr(esp_link, "list_serial_ports", lambda: [])

        with pytest.raises(DeviceIoError, match="--port"):
            find_default_port()


class TestConnect:
    def test_connect_loads_stub_and_sets_baud(self, monkeypatch):
        esp = MagicMock(CHIP_NAME="ESP32-C3", ESP_ROM_BAUD=115200)
        detected = []
        monkeypatch.setattr(esp_link, "detect_chip", lambda port: detected.append(port) or esp)
        monkeypatch.setattr(esp_link, "run_stub", lambda loader: loader)

        conn = EspDeviceLink(port="/dev/ttyACM0").connect_to_requested_device()

        assert detected == ["/dev/ttyACM0"]
        assert isinstance(conn, EspConnection)
        esp.change_baud.assert_called_once_with(921600)
        esp.flash_set_parameters.assert_called_once_with(0x1000000)

    def test_connect_failure(self, monkeypatch):
        def detect_chip(port):
            raise FatalError("Failed to connect to Espressif device")

        monkeypatch.setattr(esp_link, "detect_chip", detect_chip)

        with pytest.raises(DeviceIoError, match="Connect on /dev/ttyACM0"):
            EspDeviceLink(port="/dev/ttyACM0").connect_to_requested_device()

    def test_profile_baud_override(self):
        link = EspDeviceLink(port="x", baud_rate=460800, profile=TINY)
        assert link.baud_rate == 460800
        assert EspDeviceLink(profile=TINY).baud_rate == TINY.baud_rate
