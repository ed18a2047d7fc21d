"""
OTA boot-selection record (otadata) parsing and mutation.

The otadata partition holds two 32-byte ``esp_ota_select_entry_t`` records,
one per application partition:

    app0 record at 0x0000, app1 record at 0x1000

    +0x00  ota_seq  (u32 LE)
    +0x04  seq_label (unused here)
    +0x18  ota_state (u32 LE)
    +0x1C  crc       (u32 LE, CRC32 of ota_seq)

The bootloader boots the record with the highest sequence whose CRC is valid
and whose state is not INVALID/ABORTED. Switching partitions is done by
writing the *other* record with a higher sequence, never by touching the
record that is currently booting.
"""

import logging
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidStateEncoding, SequenceExhausted

logger = logging.getLogger(__name__)

APP0 = "app0"
APP1 = "app1"
PARTITION_LABELS = (APP0, APP1)

RECORD_OFFSETS = {APP0: 0x0000, APP1: 0x1000}
RECORD_SIZE = 0x20
SEQUENCE_OFFSET = 0x00
STATE_OFFSET = 0x18
CRC_OFFSET = 0x1C

OTADATA_SIZE = 0x2000
CRC_SEED = 0xFFFFFFFF
MAX_SEQUENCE = 0xFFFFFFFF


class PartitionState(Enum):
    """esp_ota_img_states_t values."""
    NEW = 0x0
    PENDING_VERIFY = 0x1
    VALID = 0x2
    INVALID = 0x3
    ABORTED = 0x4
    UNDEFINED = 0xFFFFFFFF


# The bootloader moves records into PENDING_VERIFY/ABORTED itself
WRITABLE_STATES = (
    PartitionState.NEW,
    PartitionState.PENDING_VERIFY,
    PartitionState.VALID,
    PartitionState.INVALID,
)

NON_BOOTABLE_STATES = (PartitionState.INVALID, PartitionState.ABORTED)


@dataclass(frozen=True)
class PartitionRecord:
    """Decoded view of one otadata record."""
    label: str
    sequence: int
    state: PartitionState
    crc_bytes: bytes
    crc_valid: bool

    @property
    def bootable(self) -> bool:
        return self.crc_valid and self.state not in NON_BOOTABLE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "sequence": self.sequence,
            "state": self.state.name,
            "crc": self.crc_bytes.hex().upper(),
            "crc_valid": self.crc_valid,
        }


def sequence_crc(sequence: int) -> bytes:
    """CRC32 of the sequence's LE bytes, as stored by the bootloader."""
    value = zlib.crc32(struct.pack("<I", sequence), CRC_SEED) & 0xFFFFFFFF
    return struct.pack("<I", value)


def decode_state(word: int) -> PartitionState:
    try:
        return PartitionState(word)
    except ValueError:
        raise InvalidStateEncoding(
            f"Invalid OTA state word 0x{word:08X}",
            details={"word": word},
        )


def encode_state(state: PartitionState) -> bytes:
    """
    Encode a state for writing.

    Raises:
        InvalidStateEncoding: If the state is owned by the bootloader
    """
    if state not in WRITABLE_STATES:
        raise InvalidStateEncoding(
            f"State {state.name} cannot be written by the host",
            details={"state": state.name},
        )
    return struct.pack("<I", state.value)


def _check_label(label: str) -> None:
    if label not in RECORD_OFFSETS:
        raise ValueError(f"Unknown partition label '{label}'. Use app0 or app1.")


class OtaImage:
    """
    Mutable otadata image.

    Reads past the end of a short buffer yield zero bytes instead of failing,
    so a truncated dump parses as "no valid record" rather than crashing.
    """

    def __init__(self, data: bytes):
        self.data = bytearray(data)

    def to_bytes(self) -> bytes:
        return bytes(self.data)

    def _read(self, offset: int, length: int) -> bytes:
        chunk = bytes(self.data[offset:offset + length])
        return chunk + b"\x00" * (length - len(chunk))

    def _write(self, offset: int, value: bytes) -> None:
        end = offset + len(value)
        if len(self.data) < end:
            self.data.extend(b"\x00" * (end - len(self.data)))
        self.data[offset:end] = value

    def parse_partition(self, label: str) -> PartitionRecord:
        _check_label(label)
        offset = RECORD_OFFSETS[label]

        sequence = struct.unpack("<I", self._read(offset + SEQUENCE_OFFSET, 4))[0]
        state_word = struct.unpack("<I", self._read(offset + STATE_OFFSET, 4))[0]
        crc_bytes = self._read(offset + CRC_OFFSET, 4)

        return PartitionRecord(
            label=label,
            sequence=sequence,
            state=decode_state(state_word),
            crc_bytes=crc_bytes,
            crc_valid=crc_bytes == sequence_crc(sequence),
        )

    def parse_partitions(self) -> Tuple[PartitionRecord, PartitionRecord]:
        """
        Decode both records.

        Raises:
            InvalidStateEncoding: If either state word is unknown
        """
        return self.parse_partition(APP0), self.parse_partition(APP1)

    def current_boot_partition(self) -> Optional[PartitionRecord]:
        """
        Record the bootloader will select, or None for a factory-fresh image.

        On equal sequences app0 wins.
        """
        candidates = [r for r in self.parse_partitions() if r.bootable]
        if not candidates:
            return None
        # max() keeps the first of equal keys, so app0 wins ties
        return max(candidates, key=lambda r: r.sequence)

    def current_boot_partition_label(self) -> Optional[str]:
        record = self.current_boot_partition()
        return record.label if record else None

    def current_backup_partition_label(self) -> str:
        """Label of the partition that is safe to overwrite."""
        if self.current_boot_partition_label() == APP1:
            return APP0
        return APP1

    def set_boot_partition(self, label: str) -> None:
        """
        Make ``label`` the next boot partition.

        Writes a NEW record for ``label`` with a sequence one past the current
        boot record. Does nothing if ``label`` already boots.

        Raises:
            SequenceExhausted: If the booting record already holds the largest
                sequence, so no higher one can be written
        """
        _check_label(label)
        current = self.current_boot_partition()

        if current is not None and current.label == label:
            logger.debug(f"{label} already boots (seq={current.sequence}), no change")
            return

        current_sequence = current.sequence if current else 0
        if current_sequence >= MAX_SEQUENCE:
            raise SequenceExhausted(
                f"Cannot boot {label}: {current.label} already has the highest sequence 0x{current_sequence:08X}",
                details={"label": label, "sequence": current_sequence},
            )
        next_sequence = current_sequence + 1
        self._write_record(label, next_sequence, PartitionState.NEW)
        logger.info(f"Boot partition set to {label} (seq={next_sequence})")

    def _write_record(self, label: str, sequence: int, state: PartitionState) -> None:
        offset = RECORD_OFFSETS[label]
        state_bytes = encode_state(state)

        self._write(offset + SEQUENCE_OFFSET, struct.pack("<I", sequence))
        self._write(offset + STATE_OFFSET, state_bytes)
        self._write(offset + CRC_OFFSET, sequence_crc(sequence))

    def describe(self) -> Dict[str, Any]:
        """JSON-serializable summary for display."""
        app0, app1 = self.parse_partitions()
        return {
            "size": len(self.data),
            "app0": app0.to_dict(),
            "app1": app1.to_dict(),
            "current_boot": self.current_boot_partition_label(),
            "backup": self.current_backup_partition_label(),
        }
