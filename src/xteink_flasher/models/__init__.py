"""
Device profile registry.

Provides the flash layout of supported devices.
"""

from .registry import (
    DEFAULT_PROFILE,
    DeviceProfile,
    PartitionSpan,
    get_profile,
    list_profiles,
)

__all__ = [
    "DEFAULT_PROFILE",
    "DeviceProfile",
    "PartitionSpan",
    "get_profile",
    "list_profiles",
]
