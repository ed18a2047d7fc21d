"""
Device link contract used by the flashing workflows.

A ``DeviceLink`` opens connections; a ``DeviceConnection`` reads and writes
partitions. Every transfer is an ``Operation`` generator (see progress.py).
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .progress import Operation

if TYPE_CHECKING:
    from xteink_flasher.core.ota_partition import OtaImage


class DeviceConnection(ABC):
    """An open connection to one device."""

    @abstractmethod
    def disconnect(self, skip_reset: bool = False) -> None:
        """Close the connection, hard-resetting the device unless skip_reset."""

    @abstractmethod
    def read_otadata_partition(self) -> "Operation[OtaImage]":
        ...

    @abstractmethod
    def write_otadata_partition(self, ota_image: "OtaImage") -> Operation[None]:
        ...

    @abstractmethod
    def read_app_partition(self, label: str) -> Operation[bytes]:
        ...

    @abstractmethod
    def write_app_partition(self, label: str, data: bytes) -> Operation[None]:
        ...

    @abstractmethod
    def read_app_partition_chunk(self, label: str, offset: int, size: int) -> Operation[bytes]:
        """Read ``size`` bytes starting ``offset`` bytes into an app partition."""

    @abstractmethod
    def read_full_flash(self) -> Operation[bytes]:
        ...

    @abstractmethod
    def write_full_flash(self, data: bytes) -> Operation[None]:
        ...


class DeviceLink(ABC):
    """Factory for device connections."""

    @abstractmethod
    def connect_to_requested_device(self) -> DeviceConnection:
        ...
