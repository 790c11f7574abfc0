import logging

import pytest

from mediaflow.flow.reporter import TaskStatusReporter, clamp_progress
from mediaflow.flow.types import StepResult, TaskResult, TaskStatus
from mediaflow.storage.repo import Repo

from conftest import BrokenRepo, FakeRedis


@pytest.mark.parametrize("progress, expected", [(150, 100), (-5, 0), (42.4, 42), (99.6, 100), (0, 0)])
def test_progress_is_clamped(reporter, repo, progress, expected):
    reporter.update_task("task-1", progress=progress)
    assert repo.records["task-1"]["progress"] == expected


def test_clamp_progress():
    assert clamp_progress(100.0) == 100
    assert clamp_progress(-0.4) == 0


def test_update_task_serializes_result(reporter, repo):
    result = TaskResult(
        steps={"A": StepResult.completed("A", {"n": 1})},
        completed_steps=["A"],
    )

    reporter.update_task("task-1", status=TaskStatus.RUNNING, result=result)

    record = repo.records["task-1"]
    assert record["status"] == "running"
    assert record["result"]["completed_steps"] == ["A"]
    assert record["result"]["steps"]["A"]["status"] == "completed"
    assert "current_step" not in record["result"]


def test_empty_error_log_is_not_written(reporter, repo):
    reporter.update_task("task-1", status=TaskStatus.SUCCESS, error_log="")
    assert "error_log" not in repo.records["task-1"]


def test_nothing_to_write_skips_store(reporter, repo):
    reporter.update_task("task-1")
    assert repo.calls == []


def test_update_status(reporter, repo):
    reporter.update_status("task-1", TaskStatus.FAILED)
    assert repo.records["task-1"] == {"status": "failed"}


def test_store_failures_are_swallowed(caplog):
    reporter = TaskStatusReporter(BrokenRepo())

    with caplog.at_level(logging.WARNING):
        reporter.update_task("task-1", status=TaskStatus.RUNNING, progress=10)
        reporter.update_status("task-1", TaskStatus.FAILED)
        reporter.advance_progress("task-1", 40)

    assert caplog.text.count("task store unavailable") == 3


@pytest.mark.parametrize("progress", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_progress_is_dropped(reporter, repo, caplog, progress):
    with caplog.at_level(logging.WARNING):
        reporter.update_task("task-1", status=TaskStatus.RUNNING, progress=progress)
        reporter.advance_progress("task-1", progress)

    assert repo.records["task-1"] == {"status": "running"}
    assert caplog.text.count("non-finite progress") == 2


def test_advance_progress_never_lowers(reporter, repo):
    reporter.advance_progress("task-1", 60)
    reporter.advance_progress("task-1", 20)
    reporter.advance_progress("task-1", 140)

    assert repo.records["task-1"]["progress"] == 100
    assert [c["raise_progress"] for c in repo.calls] == [60, 20, 100]


def test_repo_raise_progress_keeps_highest_value():
    repo = Repo(client=FakeRedis())
    repo.update("task-1", status="running", progress=50)

    repo.raise_progress("task-1", 30)
    assert repo.get("task-1").progress == 50

    repo.raise_progress("task-1", 75)
    assert repo.get("task-1").progress == 75
