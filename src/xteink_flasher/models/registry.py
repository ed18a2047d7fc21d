"""
Device profile registry.

Provides a single source of truth for:
- Flash partition layout (otadata, app0, app1) per device
- Serial defaults (chip, baud rate)

Usage:
    from xteink_flasher.models import get_profile, list_profiles

    profile = get_profile("xteink-x4")
    span = profile.app_partition("app1")
"""

from dataclasses import dataclass
from typing import Dict, List

DEFAULT_PROFILE = "xteink-x4"


@dataclass(frozen=True)
class PartitionSpan:
    """A contiguous flash region."""
    offset: int
    size: int

    @property
    def end(self) -> int:
        """Return end address (exclusive)."""
        return self.offset + self.size

    def __str__(self) -> str:
        return f"0x{self.offset:06X}-0x{self.end:06X}"


@dataclass(frozen=True)
class DeviceProfile:
    """
    Flash layout and connection defaults for one device family.

    Attributes:
        name: Registry key (e.g. "xteink-x4")
        description: Human-readable device name
        chip: esptool chip name
        flash_size: Total flash size in bytes
        otadata: OTA boot-selection partition
        app0: First application partition (ota_0)
        app1: Second application partition (ota_1)
        baud_rate: Baud rate used after the stub is loaded
    """
    name: str
    description: str
    chip: str
    flash_size: int
    otadata: PartitionSpan
    app0: PartitionSpan
    app1: PartitionSpan
    baud_rate: int = 921600

    @property
    def flash_size_label(self) -> str:
        return f"{self.flash_size // (1024 * 1024)}MB"

    def app_partition(self, label: str) -> PartitionSpan:
        if label == "app0":
            return self.app0
        if label == "app1":
            return self.app1
        raise ValueError(f"Unknown partition label '{label}'. Use app0 or app1.")

    def to_dict(self) -> Dict:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "description": self.description,
            "chip": self.chip,
            "flash_size": self.flash_size_label,
            "otadata": str(self.otadata),
            "app0": str(self.app0),
            "app1": str(self.app1),
            "baud_rate": self.baud_rate,
        }


_PROFILE_REGISTRY: Dict[str, DeviceProfile] = {}


def _register_profile(profile: DeviceProfile) -> None:
    _PROFILE_REGISTRY[profile.name] = profile


# Arduino default_16MB.csv layout, as shipped on the X4
_register_profile(DeviceProfile(
    name="xteink-x4",
    description="Xteink X4 e-reader (ESP32-C3, 16MB)",
    chip="esp32c3",
    flash_size=0x1000000,
    otadata=PartitionSpan(0xE000, 0x2000),
    app0=PartitionSpan(0x10000, 0x640000),
    app1=PartitionSpan(0x650000, 0x640000),
))


def list_profiles() -> List[DeviceProfile]:
    return sorted(_PROFILE_REGISTRY.values(), key=lambda p: p.name)


def get_profile(name: str = DEFAULT_PROFILE) -> DeviceProfile:
    """
    Look up a device profile.

    Raises:
        KeyError: If the profile is unknown
    """
    key = name.strip().lower()
    if key not in _PROFILE_REGISTRY:
        known = ", ".join(sorted(_PROFILE_REGISTRY))
        raise KeyError(f"Unknown device profile '{name}'. Known profiles: {known}")
    return _PROFILE_REGISTRY[key]
