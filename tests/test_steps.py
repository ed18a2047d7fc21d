"""Tests for sequential step tracking."""

import pytest

from xteink_flasher.core.errors import DeviceIoError
from xteink_flasher.core.steps import StepRunner, StepStatus


def test_failed_step_stops_workflow_and_later_steps_stay_pending():
    snapshots = []
    runner = StepRunner(listener=lambda steps: snapshots.append([s.status for s in steps]))
    runner.declare(["Connect", "Read", "Write", "Reset"])

    assert runner.run(0, lambda: "conn") == "conn"

    def fail():
        raise DeviceIoError("serial port vanished")

    with pytest.raises(DeviceIoError):
        runner.run(1, fail)

    statuses = [s.status for s in runner.steps]
    assert statuses == [StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.PENDING, StepStatus.PENDING]
    assert runner.step(1).error.kind == "DeviceIoError"
    assert runner.step(1).error.message == "serial port vanished"
    assert runner.step(2).error is None

    assert snapshots[0] == [StepStatus.PENDING] * 4
    assert snapshots[-1] == statuses


def test_non_flasher_exception_uses_class_name_as_kind():
    runner = StepRunner()
    runner.declare(["Parse"])

    with pytest.raises(ValueError):
        runner.run(0, lambda: int("nope"))

    assert runner.step(0).error.kind == "ValueError"


def test_interrupt_marks_step_failed():
    runner = StepRunner()
    runner.declare(["Flash", "Reset"])

    def interrupted():
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        runner.run(0, interrupted)

    assert runner.step(0).status is StepStatus.FAILED
    assert runner.step(0).error.kind == "KeyboardInterrupt"
    assert runner.step(1).status is StepStatus.PENDING


def test_steps_addressed_by_name_resolve_to_first_match():
    runner = StepRunner()
    runner.declare(["Read", "Read", "Done"])

    runner.run("Read", lambda: None)

    assert runner.steps[0].status is StepStatus.SUCCESS
    assert runner.steps[1].status is StepStatus.PENDING

    runner.run(1, lambda: None)
    assert runner.steps[1].status is StepStatus.SUCCESS


def test_unknown_step_raises():
    runner = StepRunner()
    runner.declare(["Only"])

    with pytest.raises(KeyError):
        runner.step("Missing")
    with pytest.raises(IndexError):
        runner.step(3)


def test_rename_and_progress():
    runner = StepRunner()
    runner.declare(["Flash app partition", "Reset"])

    runner.rename(0, "Flash app partition (app1)")
    on_progress = runner.progress_callback("Flash app partition (app1)")
    on_progress("bytes", 512, 2048)

    step = runner.step(0)
    assert step.name == "Flash app partition (app1)"
    assert (step.progress.current, step.progress.total) == (512, 2048)
    assert step.progress.fraction == 0.25


def test_declare_resets_previous_workflow():
    runner = StepRunner()
    runner.declare(["A"])
    runner.run(0, lambda: None)

    runner.declare(["B", "C"])

    assert [s.name for s in runner.steps] == ["B", "C"]
    assert all(s.status is StepStatus.PENDING for s in runner.steps)


def test_rerunning_failed_step_clears_error():
    runner = StepRunner()
    runner.declare(["Retry"])

    def first_try():
        raise RuntimeError("first try")

    with pytest.raises(RuntimeError):
        runner.run(0, first_try)
    runner.run(0, lambda: None)

    assert runner.step(0).status is StepStatus.SUCCESS
    assert runner.step(0).error is None
