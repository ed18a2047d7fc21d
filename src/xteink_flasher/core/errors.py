"""
Error kinds raised by flasher workflows.

Every error carries a stable ``kind`` code so that step tracking, the CLI
and tests can reason about failures without string matching.
"""

from typing import Dict, Optional


class FlasherError(Exception):
    """
    Base exception for all flasher failures.

    Attributes:
        kind: Stable error code (e.g. "DeviceIoError")
        message: Human-readable explanation
        details: Additional context (partition, offset, url, etc.)
    """

    kind = "FlasherError"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def remediation(self) -> str:
        return REMEDIATIONS.get(self.kind, "")


class InvalidStateEncoding(FlasherError):
    """OTA state word is not one of the known encodings."""

    kind = "InvalidStateEncoding"


class MissingInput(FlasherError):
    """A required input file was not supplied."""

    kind = "MissingInput"


class DeviceIoError(FlasherError):
    """Any failure talking to the device."""

    kind = "DeviceIoError"


class AssetNotFound(FlasherError):
    """A named remote firmware asset does not exist."""

    kind = "AssetNotFound"


class UnsupportedFirmwareRequest(FlasherError):
    """The requested firmware region or name is not known."""

    kind = "UnsupportedFirmwareRequest"


class SequenceExhausted(FlasherError):
    """The boot record sequence cannot be incremented any further."""

    kind = "SequenceExhausted"


class FirmwareDownloadError(FlasherError):
    """HTTP failure while fetching firmware."""

    kind = "FirmwareDownloadError"


class WorkflowBusy(FlasherError):
    """A workflow was started while another one is still running."""

    kind = "WorkflowBusy"


class Cancelled(FlasherError):
    """The workflow was cancelled by the caller."""

    kind = "Cancelled"


REMEDIATIONS: Dict[str, str] = {
    "InvalidStateEncoding":
        "The otadata partition looks corrupt. Save a full flash backup before changing anything.",
    "MissingInput":
        "Pass an existing firmware file.",
    "DeviceIoError":
        "Check the USB cable, close other serial apps, or hold BOOT while plugging in.",
    "AssetNotFound":
        "The release does not contain a firmware.bin asset yet. Try again later or flash a file.",
    "SequenceExhausted":
        "The booting otadata record is at the sequence limit. Restore otadata from a known-good backup.",
    "UnsupportedFirmwareRequest":
        "Use 'en' or 'ch' for official firmware, or 'CrossPoint' for community firmware.",
    "FirmwareDownloadError":
        "Check your network connection, or download the firmware manually and use flash-file.",
    "WorkflowBusy":
        "Wait for the running operation to finish.",
    "Cancelled":
        "The device was left as-is after the last completed step.",
}


def error_kind(exc: BaseException) -> str:
    """Return the stable kind code for any exception."""
    if isinstance(exc, FlasherError):
        return exc.kind
    return type(exc).__name__
