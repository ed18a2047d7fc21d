"""
Sequential step tracking for device workflows.

A workflow declares its steps up front; each step is then run in order and
moves pending -> running -> success/failed. The first failure is re-raised
and every later step stays pending, meaning "not attempted".

Steps are addressed by their position in the declared list (a name is
accepted too and resolves to the first step with that name).
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, TypeVar, Union

from .errors import error_kind

logger = logging.getLogger(__name__)

T = TypeVar("T")
StepKey = Union[int, str]


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class StepProgress:
    current: int
    total: int

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)


@dataclass
class StepError:
    kind: str
    message: str


@dataclass
class StepData:
    name: str
    status: StepStatus = StepStatus.PENDING
    progress: Optional[StepProgress] = None
    error: Optional[StepError] = None


class StepRunner:
    """
    Tracks the steps of one workflow.

    Args:
        listener: Optional callback(steps) invoked after every change
    """

    def __init__(self, listener: Optional[Callable[[List[StepData]], None]] = None):
        self.steps: List[StepData] = []
        self.listener = listener

    def _notify(self) -> None:
        if self.listener:
            self.listener(self.steps)

    def _index(self, key: StepKey) -> int:
        if isinstance(key, int):
            if not 0 <= key < len(self.steps):
                raise IndexError(f"No step at position {key}")
            return key
        for i, step in enumerate(self.steps):
            if step.name == key:
                return i
        raise KeyError(f"No step named '{key}'")

    def step(self, key: StepKey) -> StepData:
        return self.steps[self._index(key)]

    def declare(self, names: List[str]) -> None:
        """Replace the step list; every step starts pending."""
        self.steps = [StepData(name=name) for name in names]
        self._notify()

    def rename(self, key: StepKey, new_name: str) -> None:
        self.step(key).name = new_name
        self._notify()

    def report_progress(self, key: StepKey, current: int, total: int) -> None:
        self.step(key).progress = StepProgress(current, total)
        self._notify()

    def progress_callback(self, key: StepKey) -> Callable[[str, int, int], None]:
        """Return an on_progress(unit, current, total) bound to one step."""
        index = self._index(key)

        def on_progress(unit: str, current: int, total: int) -> None:
            self.report_progress(index, current, total)

        return on_progress

    def run(self, key: StepKey, action: Callable[[], T]) -> T:
        """
        Run ``action`` as the given step.

        Raises:
            Whatever ``action`` raised, after recording it on the step
        """
        index = self._index(key)
        step = self.steps[index]
        step.status = StepStatus.RUNNING
        step.error = None
        self._notify()
        logger.info(f"Step {index + 1}/{len(self.steps)}: {step.name}")

        try:
            result = action()
        except BaseException as e:
            step.status = StepStatus.FAILED
            step.error = StepError(kind=error_kind(e), message=str(e))
            self._notify()
            logger.error(f"Step '{step.name}' failed: {e}")
            raise

        step.status = StepStatus.SUCCESS
        self._notify()
        return result
