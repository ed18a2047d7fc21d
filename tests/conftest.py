"""Shared fixtures: an in-memory device link for workflow tests."""

from contextlib import contextmanager
from typing import Dict, List, Optional, Set, Tuple

import pytest

from xteink_flasher.core.errors import DeviceIoError
from xteink_flasher.core.ota_partition import OTADATA_SIZE, OtaImage
from xteink_flasher.core.steps import StepRunner
from xteink_flasher.core.actions import FlashOrchestrator
from xteink_flasher.protocol.device import DeviceConnection, DeviceLink
from xteink_flasher.protocol.progress import ProgressEvent


class FakeConnection(DeviceConnection):
    """Records every call; operations listed in ``fail_on`` raise DeviceIoError."""

    def __init__(self, otadata: bytes = b"", app0: bytes = b"", app1: bytes = b"", flash: bytes = b""):
        self.ota = OtaImage(otadata or bytes(OTADATA_SIZE))
        self.partitions: Dict[str, bytes] = {"app0": app0, "app1": app1}
        self.flash = flash
        self.writes: List[Tuple[str, bytes]] = []
        self.chunk_reads: List[Tuple[str, int, int]] = []
        self.disconnects: List[bool] = []
        self.fail_on: Set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise DeviceIoError(f"{name} failed")

    def disconnect(self, skip_reset: bool = False) -> None:
        self.disconnects.append(skip_reset)
        self._check("disconnect")

    def read_otadata_partition(self):
        self._check("read_otadata")
        yield ProgressEvent("bytes", OTADATA_SIZE, OTADATA_SIZE)
        return OtaImage(self.ota.to_bytes())

    def write_otadata_partition(self, ota_image):
        self._check("write_otadata")
        yield ProgressEvent("bytes", OTADATA_SIZE, OTADATA_SIZE)
        self.ota = OtaImage(ota_image.to_bytes())
        self.writes.append(("otadata", ota_image.to_bytes()))

    def read_app_partition(self, label):
        self._check("read_app")
        data = self.partitions[label]
        yield ProgressEvent("bytes", len(data), len(data))
        return data

    def write_app_partition(self, label, data):
        self._check("write_app")
        half = len(data) // 2
        yield ProgressEvent("bytes", half, len(data))
        yield ProgressEvent("bytes", len(data), len(data))
        self.partitions[label] = data
        self.writes.append((label, data))

    def read_app_partition_chunk(self, label, offset, size):
        self._check("read_chunk")
        self.chunk_reads.append((label, offset, size))
        data = self.partitions[label][offset:offset + size]
        yield ProgressEvent("bytes", len(data), size)
        return data

    def read_full_flash(self):
        self._check("read_flash")
        yield ProgressEvent("bytes", len(self.flash), len(self.flash))
        return self.flash

    def write_full_flash(self, data):
        self._check("write_flash")
        yield ProgressEvent("bytes", len(data), len(data))
        self.flash = data
        self.writes.append(("flash", data))


class FakeLink(DeviceLink):
    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.connects = 0
        self.error: Optional[Exception] = None

    def connect_to_requested_device(self) -> FakeConnection:
        self.connects += 1
        if self.error is not None:
            raise self.error
        return self.connection


class KeepAwakeRecorder:
    def __init__(self):
        self.reasons: List[str] = []
        self.active = False

    @contextmanager
    def __call__(self, reason: str):
        self.reasons.append(reason)
        self.active = True
        try:
            yield
        finally:
            self.active = False


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def link(connection) -> FakeLink:
    return FakeLink(connection)


@pytest.fixture
def keep_awake() -> KeepAwakeRecorder:
    return KeepAwakeRecorder()


@pytest.fixture
def orchestrator(link, keep_awake) -> FlashOrchestrator:
    return FlashOrchestrator(link, steps=StepRunner(), keep_awake=keep_awake)
