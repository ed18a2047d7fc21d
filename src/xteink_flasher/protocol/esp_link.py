"""
ESP32 device link over esptool.

Handles:
- Serial port discovery (Espressif USB VID)
- Chip detection, stub loading and baud switching
- Block-wise flash read/write with progress events
- Hard reset on disconnect

Example:
    link = EspDeviceLink(port="/dev/ttyACM0")
    conn = link.connect_to_requested_device()
    ota = drive(conn.read_otadata_partition())
    conn.disconnect(skip_reset=True)
"""

import hashlib
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

import serial
import serial.tools.list_ports
from esptool.cmds import detect_chip, run_stub
from esptool.util import FatalError

from xteink_flasher.core.errors import DeviceIoError
from xteink_flasher.core.ota_partition import OtaImage
from xteink_flasher.models.registry import DeviceProfile, PartitionSpan, get_profile

from .device import DeviceConnection, DeviceLink
from .progress import Operation, ProgressEvent

logger = logging.getLogger(__name__)

ESPRESSIF_USB_VID = 0x303A
READ_BLOCK_SIZE = 0x4000
PROGRESS_UNIT = "bytes"


@contextmanager
def _device_errors(action: str) -> Iterator[None]:
    """Re-raise esptool/pyserial failures as DeviceIoError."""
    try:
        yield
    except DeviceIoError:
        raise
    except (FatalError, serial.SerialException, OSError) as e:
        raise DeviceIoError(f"{action} failed: {e}", details={"action": action})


def list_serial_ports() -> List:
    return list(serial.tools.list_ports.comports())


def find_default_port() -> str:
    """
    Pick the first serial port exposed by an Espressif USB device.

    Raises:
        DeviceIoError: If no such port is present
    """
    for port in list_serial_ports():
        if port.vid == ESPRESSIF_USB_VID:
            logger.debug(f"Using {port.device} ({port.description})")
            return port.device
    raise DeviceIoError(
        "No Espressif USB device found. Pass --port explicitly.",
        details={"vid": f"0x{ESPRESSIF_USB_VID:04X}"},
    )


class EspConnection(DeviceConnection):
    """
    Connection to a device running the esptool flasher stub.

    Args:
        esp: Connected esptool loader (stub already running)
        profile: Flash layout of the device
    """

    def __init__(self, esp, profile: DeviceProfile):
        self.esp = esp
        self.profile = profile
        self.closed = False

    def disconnect(self, skip_reset: bool = False) -> None:
        if self.closed:
            return
        with _device_errors("Disconnect"):
            try:
                if not skip_reset:
                    logger.info("Hard resetting device")
                    self.esp.hard_reset()
            finally:
                self.closed = True
                self.esp._port.close()
        logger.debug("Serial port closed")

    def _read(self, address: int, size: int) -> Operation[bytes]:
        data = bytearray()
        with _device_errors(f"Read 0x{address:06X}+0x{size:X}"):
            while len(data) < size:
                block = min(READ_BLOCK_SIZE, size - len(data))
                data.extend(self.esp.read_flash(address + len(data), block))
                yield ProgressEvent(PROGRESS_UNIT, len(data), size)
        logger.debug(f"Read {len(data)} bytes from 0x{address:06X}")
        return bytes(data)

    def _write(self, address: int, data: bytes) -> Operation[None]:
        total = len(data)
        block_size = self.esp.FLASH_WRITE_SIZE

        with _device_errors(f"Write 0x{address:06X}+0x{total:X}"):
            self.esp.flash_begin(total, address)
            for seq, start in enumerate(range(0, total, block_size)):
                block = data[start:start + block_size]
                block += b"\xFF" * (block_size - len(block))
                self.esp.flash_block(block, seq)
                yield ProgressEvent(PROGRESS_UNIT, min(start + block_size, total), total)

            expected = hashlib.md5(data).hexdigest()
            actual = self.esp.flash_md5sum(address, total)
        if actual.lower() != expected:
            raise DeviceIoError(
                f"Verification failed at 0x{address:06X}: md5 {actual} != {expected}",
                details={"address": address, "size": total},
            )
        logger.info(f"Wrote {total} bytes at 0x{address:06X} (md5 verified)")

    def _app_span(self, label: str) -> PartitionSpan:
        return self.profile.app_partition(label)

    def read_otadata_partition(self) -> Operation[OtaImage]:
        span = self.profile.otadata
        data = yield from self._read(span.offset, span.size)
        return OtaImage(data)

    def write_otadata_partition(self, ota_image: OtaImage) -> Operation[None]:
        data = ota_image.to_bytes()
        if len(data) > self.profile.otadata.size:
            raise DeviceIoError(
                f"otadata image is {len(data)} bytes, partition holds {self.profile.otadata.size}"
            )
        yield from self._write(self.profile.otadata.offset, data)

    def read_app_partition(self, label: str) -> Operation[bytes]:
        span = self._app_span(label)
        return (yield from self._read(span.offset, span.size))

    def write_app_partition(self, label: str, data: bytes) -> Operation[None]:
        span = self._app_span(label)
        if len(data) > span.size:
            raise DeviceIoError(
                f"Firmware is {len(data):,} bytes, {label} holds {span.size:,}",
                details={"label": label, "size": len(data)},
            )
        yield from self._write(span.offset, data)

    def read_app_partition_chunk(self, label: str, offset: int, size: int) -> Operation[bytes]:
        span = self._app_span(label)
        size = max(0, min(size, span.size - offset))
        return (yield from self._read(span.offset + offset, size))

    def read_full_flash(self) -> Operation[bytes]:
        return (yield from self._read(0, self.profile.flash_size))

    def write_full_flash(self, data: bytes) -> Operation[None]:
        if len(data) > self.profile.flash_size:
            raise DeviceIoError(
                f"Flash image is {len(data):,} bytes, device flash is {self.profile.flash_size:,}"
            )
        yield from self._write(0, data)


class EspDeviceLink(DeviceLink):
    """
    Opens esptool connections.

    Args:
        port: Serial port (None to auto-detect an Espressif USB device)
        baud_rate: Baud rate after stub load (default from profile)
        profile: Device profile (default xteink-x4)
    """

    def __init__(
        self,
        port: Optional[str] = None,
        baud_rate: Optional[int] = None,
        profile: Optional[DeviceProfile] = None,
    ):
        self.port = port
        self.profile = profile or get_profile()
        self.baud_rate = baud_rate or self.profile.baud_rate

    def connect_to_requested_device(self) -> EspConnection:
        """
        Connect, load the flasher stub and switch baud rate.

        Raises:
            DeviceIoError: If the device cannot be reached
        """
        port = self.port or find_default_port()
        with _device_errors(f"Connect on {port}"):
            esp = detect_chip(port)
            logger.info(f"Connected to {esp.CHIP_NAME} on {port}")
            if esp.CHIP_NAME.replace("-", "").lower() != self.profile.chip:
                logger.warning(
                    f"Expected {self.profile.chip}, found {esp.CHIP_NAME}; continuing"
                )
            esp = run_stub(esp)
            if self.baud_rate != esp.ESP_ROM_BAUD:
                esp.change_baud(self.baud_rate)
            esp.flash_set_parameters(self.profile.flash_size)
        return EspConnection(esp, self.profile)
