"""
Firmware identification heuristics.

Classifies a firmware image as official (English/Chinese), CrossPoint
community, or unknown, using only the image bytes. This is best-effort:
a modified firmware can easily fool it.

Detection strategy:
1. Validate the ESP32 image structure (image magic + app descriptor magic)
2. Find a version string in the first 25KB
3. Official firmware has a V3.x.x style version; the Chinese build has
   "XTOS" within 50 bytes of it, the English build does not
4. Otherwise look for CrossPoint markers anywhere in the image
"""

import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

SEARCH_LIMIT = 25000
PROXIMITY = 50

ESP_IMAGE_MAGIC = 0xE9
APP_DESC_MAGIC = 0xABCD5432
APP_DESC_MAGIC_OFFSET = 0x20
MIN_IMAGE_LEN = 0x24

UNKNOWN_VERSION = "unknown"

CHINESE_MARKER = b"XTOS"
CROSSPOINT_MARKERS = (b"CrossPoint-ESP32-", b"Starting CrossPoint version")

_OFFICIAL_VERSION_RE = re.compile(r"V\d+\.\d+\.\d+", re.ASCII)
_CROSSPOINT_VERSION_RE = re.compile(r"CrossPoint-ESP32-(\d+\.\d+\.\d+)", re.ASCII)
_BARE_VERSION_RE = re.compile(r"\d+\.\d+\.\d+", re.ASCII)
_LABELLED_VERSION_RE = re.compile(r"Version[:\s]*(\d+\.\d+\.\d+)", re.ASCII | re.IGNORECASE)
_LINE_SPLIT_RE = re.compile(r"[\x00\n]")


class FirmwareType(Enum):
    OFFICIAL_ENGLISH = "official-english"
    OFFICIAL_CHINESE = "official-chinese"
    CROSSPOINT = "crosspoint"
    UNKNOWN = "unknown"


DISPLAY_NAMES = {
    FirmwareType.OFFICIAL_ENGLISH: "Official English",
    FirmwareType.OFFICIAL_CHINESE: "Official Chinese",
    FirmwareType.CROSSPOINT: "CrossPoint Community Reader",
    FirmwareType.UNKNOWN: "Custom/Unknown Firmware",
}


@dataclass(frozen=True)
class FirmwareInfo:
    """Identification result for one firmware image."""
    type: FirmwareType
    version: str
    display_name: str

    @classmethod
    def of(cls, firmware_type: FirmwareType, version: str) -> "FirmwareInfo":
        return cls(firmware_type, version, DISPLAY_NAMES[firmware_type])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "version": self.version,
            "display_name": self.display_name,
        }


UNKNOWN_FIRMWARE = FirmwareInfo.of(FirmwareType.UNKNOWN, UNKNOWN_VERSION)


def is_valid_esp32_image(data: bytes) -> bool:
    """Check image magic at 0x00 and app descriptor magic at 0x20."""
    if len(data) < MIN_IMAGE_LEN:
        return False
    if data[0] != ESP_IMAGE_MAGIC:
        return False
    (desc_magic,) = struct.unpack_from("<I", data, APP_DESC_MAGIC_OFFSET)
    return desc_magic == APP_DESC_MAGIC


def extract_version(data: bytes, search_limit: int = SEARCH_LIMIT) -> str:
    """
    Extract a version string from firmware bytes.

    Tries, in order: official ``V1.2.3``, ``CrossPoint-ESP32-1.2.3``, a bare
    ``1.2.3`` line, and ``Version: 1.2.3``.

    Args:
        data: Firmware bytes
        search_limit: How many leading bytes to search (default 25KB)

    Returns:
        Version string, or "unknown"
    """
    area = bytes(data[:search_limit])

    for i in range(len(area) - 8):
        if area[i] == 0x56:  # 'V'
            chunk = area[i:i + 10].decode("utf-8", errors="replace")
            match = _OFFICIAL_VERSION_RE.search(chunk)
            if match:
                return match.group(0)

    text = area.decode("utf-8", errors="replace")

    match = _CROSSPOINT_VERSION_RE.search(text)
    if match:
        return match.group(1)

    for line in _LINE_SPLIT_RE.split(text):
        if _BARE_VERSION_RE.fullmatch(line):
            return line

    match = _LABELLED_VERSION_RE.search(text)
    if match:
        return match.group(1)

    return UNKNOWN_VERSION


def identify_firmware(data: bytes) -> FirmwareInfo:
    """
    Identify firmware type and version.

    Never raises; an unrecognised image yields ``FirmwareType.UNKNOWN``
    (possibly with a version, when one was found without enough context to
    attribute it).
    """
    data = bytes(data)
    valid_image = is_valid_esp32_image(data)
    area = data[:SEARCH_LIMIT]

    version = extract_version(area)
    version_offset = -1
    if version != UNKNOWN_VERSION:
        version_offset = area.find(version.encode("utf-8"))

    if version_offset != -1 and version.startswith("V") and valid_image:
        start = max(0, version_offset - PROXIMITY)
        end = min(len(area), version_offset + len(version) + PROXIMITY)
        if CHINESE_MARKER in area[start:end]:
            return FirmwareInfo.of(FirmwareType.OFFICIAL_CHINESE, version)
        return FirmwareInfo.of(FirmwareType.OFFICIAL_ENGLISH, version)

    if any(marker in data for marker in CROSSPOINT_MARKERS):
        return FirmwareInfo.of(FirmwareType.CROSSPOINT, version)

    return FirmwareInfo.of(FirmwareType.UNKNOWN, version)


def is_identification_successful(info: FirmwareInfo) -> bool:
    """True unless the firmware type is unknown."""
    return info.type is not FirmwareType.UNKNOWN
