"""
xteink-flasher - Firmware flashing and boot partition management for Xteink X4 e-readers

Flash official or community firmware to the inactive app partition, back up
and restore the full flash, swap boot partitions and identify installed
firmware.
"""

__version__ = "0.1.0"

from xteink_flasher.core import FlashOrchestrator, OtaImage, identify_firmware
from xteink_flasher.protocol import EspDeviceLink

__all__ = [
    "FlashOrchestrator",
    "OtaImage",
    "identify_firmware",
    "EspDeviceLink",
    "__version__",
]
