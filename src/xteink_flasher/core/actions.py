"""
Device workflows for xteink-flasher.

Every operator-facing action (flash firmware, back up flash, swap boot
partition, identify firmware) is a fixed list of steps run through a
``StepRunner``. The first failing step stops the workflow; the CLI renders
the same step list.

Writes always finish with a resetting disconnect; reads disconnect without
resetting so the device stays in the bootloader.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from xteink_flasher.protocol.device import DeviceConnection, DeviceLink
from xteink_flasher.protocol.progress import CancellationToken, Operation, drive
from xteink_flasher.remote.firmware_fetcher import FirmwareFetcher
from xteink_flasher.utils.power import keep_awake as default_keep_awake

from .errors import MissingInput, WorkflowBusy
from .firmware_identifier import (
    UNKNOWN_FIRMWARE,
    FirmwareInfo,
    identify_firmware,
    is_identification_successful,
)
from .ota_partition import APP0, APP1, OtaImage
from .steps import StepKey, StepRunner

logger = logging.getLogger(__name__)

# Step names
CONNECT = "Connect to device"
DISCONNECT = "Disconnect from device"
RESET = "Reset device"
READ_FILE = "Read file"
DOWNLOAD_FIRMWARE = "Download firmware"
READ_OTADATA = "Read otadata partition"
FLASH_APP = "Flash app partition"
FLASH_OTADATA = "Flash otadata partition"
READ_FLASH = "Read flash"
WRITE_FLASH = "Write flash"
IDENTIFY_TYPES = "Identify firmware types"

# Incremental identification window
IDENTIFY_CHUNK_SIZE = 0x6400
IDENTIFY_MAX_READ = 0x20000

FileSource = Callable[[], Union[bytes, bytearray, str, Path, None]]


@dataclass(frozen=True)
class OrchestratorState:
    """Idle when ``workflow`` is None, otherwise running that workflow."""
    workflow: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.workflow is not None


IDLE = OrchestratorState()


@dataclass(frozen=True)
class IdentificationReport:
    app0: FirmwareInfo
    app1: FirmwareInfo
    current_boot: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app0": self.app0.to_dict(),
            "app1": self.app1.to_dict(),
            "current_boot": self.current_boot,
        }


def app_partition_step(label: str) -> str:
    return f"Read app partition ({label})"


def load_file(source: FileSource) -> bytes:
    """
    Resolve a file source to bytes.

    Raises:
        MissingInput: If no file was supplied or it does not exist
    """
    value = source()
    if value is None:
        raise MissingInput("File not found")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)

    path = Path(value)
    if not path.is_file():
        raise MissingInput(f"File not found: {path}", details={"path": str(path)})
    data = path.read_bytes()
    logger.info(f"Read {len(data):,} bytes from {path}")
    return data


class FlashOrchestrator:
    """
    Runs device workflows against a device link.

    Args:
        link: Device link used to open connections
        fetcher: Firmware source for remote flashing (a FirmwareFetcher per
            workflow, closed when it ends, if None)
        steps: Step runner to report into (a new one if None)
        cancel: Optional cancellation token, checked between transfer blocks
        keep_awake: Context manager factory wrapped around full-flash transfers
    """

    def __init__(
        self,
        link: DeviceLink,
        fetcher=None,
        steps: Optional[StepRunner] = None,
        cancel: Optional[CancellationToken] = None,
        keep_awake: Callable[[str], Any] = default_keep_awake,
    ):
        self.link = link
        self.fetcher = fetcher
        self.steps = steps or StepRunner()
        self.cancel = cancel
        self.keep_awake = keep_awake
        self.state = IDLE
        self._connection: Optional[DeviceConnection] = None

    @property
    def is_running(self) -> bool:
        return self.state.running

    @contextmanager
    def _workflow(self, name: str, step_names: List[str]) -> Iterator[None]:
        if self.state.running:
            raise WorkflowBusy(
                f"Cannot start {name}: {self.state.workflow} is still running",
                details={"running": self.state.workflow},
            )
        self.state = OrchestratorState(name)
        self.steps.declare(step_names)
        logger.info(f"Starting workflow {name}")
        try:
            yield
        except BaseException:
            self._release_connection()
            raise
        finally:
            self._connection = None
            self.state = IDLE

    def _release_connection(self) -> None:
        """Close a connection left open by a failed step, without resetting."""
        if self._connection is None:
            return
        try:
            self._connection.disconnect(skip_reset=True)
        except Exception as e:
            logger.warning(f"Could not close device connection after failure: {e}")

    def _transfer(self, step: StepKey, operation: Operation) -> Any:
        return drive(operation, self.steps.progress_callback(step), self.cancel)

    def _connect(self, step: StepKey) -> DeviceConnection:
        def connect() -> DeviceConnection:
            self._connection = self.link.connect_to_requested_device()
            return self._connection

        return self.steps.run(step, connect)

    def _disconnect(self, step: StepKey, conn: DeviceConnection, skip_reset: bool) -> None:
        def disconnect() -> None:
            conn.disconnect(skip_reset=skip_reset)
            self._connection = None

        self.steps.run(step, disconnect)

    def _read_otadata(self, step: StepKey, conn: DeviceConnection) -> OtaImage:
        return self.steps.run(step, lambda: self._transfer(step, conn.read_otadata_partition()))

    def _read_otadata_with_backup(self, step: StepKey, conn: DeviceConnection) -> Tuple[OtaImage, str]:
        def read() -> Tuple[OtaImage, str]:
            ota = self._transfer(step, conn.read_otadata_partition())
            return ota, ota.current_backup_partition_label()

        return self.steps.run(step, read)

    def _flash_to_backup(
        self,
        conn: DeviceConnection,
        firmware: bytes,
        read_step: int,
        flash_step: int,
        otadata_step: int,
    ) -> OtaImage:
        """Write firmware to the non-booting partition, then point otadata at it."""
        ota, backup = self._read_otadata_with_backup(read_step, conn)
        logger.info(f"Backup partition is {backup}")

        self.steps.rename(flash_step, f"{FLASH_APP} ({backup})")
        self.steps.run(
            flash_step,
            lambda: self._transfer(flash_step, conn.write_app_partition(backup, firmware)),
        )

        def flash_otadata() -> None:
            ota.set_boot_partition(backup)
            self._transfer(otadata_step, conn.write_otadata_partition(ota))

        self.steps.run(otadata_step, flash_otadata)
        return ota

    # Workflows

    def flash_remote_firmware(self, get_firmware: Callable[[], bytes]) -> OtaImage:
        """Download firmware and flash it to the backup partition."""
        with self._workflow("flash_remote_firmware", [
            CONNECT,
            DOWNLOAD_FIRMWARE,
            READ_OTADATA,
            FLASH_APP,
            FLASH_OTADATA,
            RESET,
        ]):
            conn = self._connect(0)
            firmware = self.steps.run(1, get_firmware)
            ota = self._flash_to_backup(conn, firmware, 2, 3, 4)
            self._disconnect(5, conn, skip_reset=False)
            return ota

    @contextmanager
    def _remote_fetcher(self) -> Iterator[Any]:
        """Yield the configured fetcher, or a temporary one that is closed afterwards."""
        if self.fetcher is not None:
            yield self.fetcher
            return
        with FirmwareFetcher() as fetcher:
            yield fetcher

    def flash_official_firmware(self, region: str) -> OtaImage:
        """Flash official firmware ("en" or "ch")."""
        with self._remote_fetcher() as fetcher:
            return self.flash_remote_firmware(lambda: fetcher.fetch_official_firmware(region))

    def flash_crosspoint_firmware(self) -> OtaImage:
        with self._remote_fetcher() as fetcher:
            return self.flash_remote_firmware(lambda: fetcher.fetch_community_firmware("CrossPoint"))

    def flash_custom_firmware(self, get_file: FileSource) -> OtaImage:
        """Flash a local firmware file to the backup partition."""
        with self._workflow("flash_custom_firmware", [
            READ_FILE,
            CONNECT,
            READ_OTADATA,
            FLASH_APP,
            FLASH_OTADATA,
            RESET,
        ]):
            firmware = self.steps.run(0, lambda: load_file(get_file))
            conn = self._connect(1)
            ota = self._flash_to_backup(conn, firmware, 2, 3, 4)
            self._disconnect(5, conn, skip_reset=False)
            return ota

    def save_full_flash(self) -> bytes:
        """Read the entire flash. The caller persists the returned bytes."""
        with self._workflow("save_full_flash", [CONNECT, READ_FLASH, DISCONNECT]):
            conn = self._connect(0)

            def read_flash() -> bytes:
                with self.keep_awake("Reading full flash"):
                    return self._transfer(1, conn.read_full_flash())

            data = self.steps.run(1, read_flash)
            self._disconnect(2, conn, skip_reset=True)
            return data

    def write_full_flash(self, get_file: FileSource) -> None:
        """Restore a full flash image."""
        with self._workflow("write_full_flash", [READ_FILE, CONNECT, WRITE_FLASH, RESET]):
            data = self.steps.run(0, lambda: load_file(get_file))
            conn = self._connect(1)

            def write_flash() -> None:
                with self.keep_awake("Writing full flash"):
                    self._transfer(2, conn.write_full_flash(data))

            self.steps.run(2, write_flash)
            self._disconnect(3, conn, skip_reset=False)

    def read_debug_otadata(self) -> OtaImage:
        """Read otadata for inspection; the device is not reset."""
        with self._workflow("read_debug_otadata", [CONNECT, READ_OTADATA, DISCONNECT]):
            conn = self._connect(0)
            ota = self._read_otadata(1, conn)
            self._disconnect(2, conn, skip_reset=True)
            return ota

    def read_app_partition(self, label: str) -> bytes:
        """Read a whole app partition for inspection or download."""
        if label not in (APP0, APP1):
            raise ValueError(f"Unknown partition label '{label}'. Use app0 or app1.")
        with self._workflow("read_app_partition", [CONNECT, app_partition_step(label), DISCONNECT]):
            conn = self._connect(0)
            data = self.steps.run(1, lambda: self._transfer(1, conn.read_app_partition(label)))
            self._disconnect(2, conn, skip_reset=True)
            return data

    def swap_boot_partition(self) -> OtaImage:
        """Boot the other app partition on next reset."""
        with self._workflow("swap_boot_partition", [CONNECT, READ_OTADATA, FLASH_OTADATA, RESET]):
            conn = self._connect(0)
            ota, backup = self._read_otadata_with_backup(1, conn)

            def flash_otadata() -> None:
                ota.set_boot_partition(backup)
                self._transfer(2, conn.write_otadata_partition(ota))

            self.steps.run(2, flash_otadata)
            self._disconnect(3, conn, skip_reset=False)
            return ota

    def identify_partition(self, conn: DeviceConnection, label: str, step: StepKey) -> FirmwareInfo:
        """
        Identify the firmware in one app partition reading as little as possible.

        Reads IDENTIFY_CHUNK_SIZE chunks (up to IDENTIFY_MAX_READ bytes) and
        re-identifies the accumulated data after each one, stopping at the
        first confident result. Progress spans the whole scan window.
        """
        data = bytearray()
        info = UNKNOWN_FIRMWARE

        for offset in range(0, IDENTIFY_MAX_READ, IDENTIFY_CHUNK_SIZE):
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()

            def on_progress(unit: str, current: int, total: int, offset: int = offset) -> None:
                self.steps.report_progress(step, offset + current, offset + total)

            size = min(IDENTIFY_CHUNK_SIZE, IDENTIFY_MAX_READ - offset)
            chunk = drive(conn.read_app_partition_chunk(label, offset, size), on_progress, self.cancel)
            if not chunk:
                break
            data.extend(chunk)

            info = identify_firmware(data)
            if is_identification_successful(info):
                logger.info(f"{label}: {info.display_name} {info.version} after {len(data):,} bytes")
                return info

        logger.info(f"{label}: not identified after {len(data):,} bytes")
        return info

    def read_and_identify_all_firmware(self) -> IdentificationReport:
        """Identify the firmware in both app partitions."""
        with self._workflow("read_and_identify_all_firmware", [
            CONNECT,
            READ_OTADATA,
            f"Read {APP0} partition",
            f"Read {APP1} partition",
            IDENTIFY_TYPES,
            DISCONNECT,
        ]):
            conn = self._connect(0)

            def read_otadata() -> Optional[str]:
                ota = self._transfer(1, conn.read_otadata_partition())
                return ota.current_boot_partition_label()

            current_boot = self.steps.run(1, read_otadata)
            app0 = self.steps.run(2, lambda: self.identify_partition(conn, APP0, 2))
            app1 = self.steps.run(3, lambda: self.identify_partition(conn, APP1, 3))
            # Identification already happened while reading
            self.steps.run(4, lambda: None)
            self._disconnect(5, conn, skip_reset=True)
            return IdentificationReport(app0=app0, app1=app1, current_boot=current_boot)
