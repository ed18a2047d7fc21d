"""
Centralized parsing helpers for CLI values.

The CLI must import these helpers rather than re-implement them.
"""

from typing import Optional

from .ota_partition import PARTITION_LABELS


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse offset value from string, supporting multiple formats.

    Accepts:
        - Decimal: "57344"
        - Hex with 0x prefix: "0xE000" or "0XE000"
        - Hex with h suffix: "E000h" or "E000H"
        - None for auto-detection

    Returns:
        Parsed integer offset, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid offset '{value}'. Use decimal (57344), hex (0xE000), or suffix (E000h)."
        )

    if result < 0:
        raise ValueError(f"Offset must not be negative: '{value}'")
    return result


def parse_partition_label(value: str) -> str:
    """
    Normalize an app partition label.

    Accepts "app0"/"app1" in any case, and the ESP-IDF names "ota_0"/"ota_1".

    Raises:
        ValueError: If the label is not an app partition
    """
    label = value.strip().lower().replace("ota_", "app")
    if label not in PARTITION_LABELS:
        raise ValueError(f"Invalid partition '{value}'. Use app0 or app1.")
    return label
