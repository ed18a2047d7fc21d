"""
Core module for xteink-flasher.

This module provides the single source of truth for:
- Error kinds (errors.py)
- OTA boot-selection records (ota_partition.py)
- Firmware identification (firmware_identifier.py)
- Step tracking (steps.py)
- Write gating / confirmation (safety.py)
- CLI value parsing (parsing.py)
- Device workflows (actions.py)

The CLI calls into this module rather than implementing its own logic.
"""

from .errors import (
    FlasherError,
    InvalidStateEncoding,
    MissingInput,
    DeviceIoError,
    AssetNotFound,
    UnsupportedFirmwareRequest,
    SequenceExhausted,
    FirmwareDownloadError,
    WorkflowBusy,
    Cancelled,
)
from .ota_partition import (
    APP0,
    APP1,
    PartitionState,
    PartitionRecord,
    OtaImage,
)
from .firmware_identifier import (
    FirmwareType,
    FirmwareInfo,
    identify_firmware,
    is_identification_successful,
)
from .steps import StepRunner, StepData, StepStatus
from .safety import SafetyContext, require_write_permission, WritePermissionError
from .parsing import parse_offset, parse_partition_label
from .actions import FlashOrchestrator, IdentificationReport, OrchestratorState

__all__ = [
    # Errors
    "FlasherError",
    "InvalidStateEncoding",
    "MissingInput",
    "DeviceIoError",
    "AssetNotFound",
    "UnsupportedFirmwareRequest",
    "SequenceExhausted",
    "FirmwareDownloadError",
    "WorkflowBusy",
    "Cancelled",
    # OTA
    "APP0",
    "APP1",
    "PartitionState",
    "PartitionRecord",
    "OtaImage",
    # Identification
    "FirmwareType",
    "FirmwareInfo",
    "identify_firmware",
    "is_identification_successful",
    # Steps
    "StepRunner",
    "StepData",
    "StepStatus",
    # Safety
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    # Parsing
    "parse_offset",
    "parse_partition_label",
    # Workflows
    "FlashOrchestrator",
    "IdentificationReport",
    "OrchestratorState",
]
