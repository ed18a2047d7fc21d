"""Device link layer - contract, progress events and the esptool implementation."""

from .progress import (
    ProgressEvent,
    CancellationToken,
    drive,
)
from .device import DeviceConnection, DeviceLink
from .esp_link import (
    EspDeviceLink,
    EspConnection,
    find_default_port,
    list_serial_ports,
)

__all__ = [
    "ProgressEvent",
    "CancellationToken",
    "drive",
    "DeviceConnection",
    "DeviceLink",
    "EspDeviceLink",
    "EspConnection",
    "find_default_port",
    "list_serial_ports",
]
