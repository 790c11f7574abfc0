"""Pure functions folding step results into task results and error logs."""

import traceback
from typing import Any, Dict, Iterable, List, Mapping, Optional

import orjson

from .types import StepResult, StepStatus, TaskErrorLogEntry, TaskResult, utcnow_iso


def build_task_result(
    step_results: Mapping[str, StepResult],
    started_at: Optional[str] = None,
    completed_at: Optional[str] = None,
) -> TaskResult:
    completed: List[str] = []
    failed: List[str] = []
    for step_type, result in step_results.items():
        if result.status == StepStatus.COMPLETED:
            completed.append(step_type)
        elif result.status == StepStatus.FAILED:
            failed.append(step_type)
    return TaskResult(
        steps=dict(step_results),
        completed_steps=sorted(completed),
        failed_steps=sorted(failed),
        started_at=started_at,
        completed_at=completed_at,
    )


def merge_step_result(step_results: Mapping[str, StepResult], result: StepResult) -> Dict[str, StepResult]:
    """Return a copy of ``step_results`` with ``result`` merged in.

    A completed entry is final. A failed entry only yields to a retry
    (running) or a completed result. Anything replaces a running entry.
    """
    merged = dict(step_results)
    current = merged.get(result.step_type)
    if current is None or current == result:
        merged[result.step_type] = result
        return merged
    if current.status == StepStatus.COMPLETED:
        return merged
    if current.status == StepStatus.FAILED and result.status == StepStatus.FAILED:
        # keep the first recorded failure of an attempt sequence
        return merged
    merged[result.step_type] = result
    return merged


def merge_step_results(step_results: Mapping[str, StepResult], results: Iterable[StepResult]) -> Dict[str, StepResult]:
    merged = dict(step_results)
    for result in results:
        merged = merge_step_result(merged, result)
    return merged


def _serialize(entries: List[TaskErrorLogEntry]) -> str:
    return orjson.dumps(
        [e.model_dump(exclude_none=True) for e in entries],
        option=orjson.OPT_INDENT_2,
    ).decode()


def error_log_entries(step_results: Mapping[str, StepResult]) -> List[TaskErrorLogEntry]:
    entries: List[TaskErrorLogEntry] = []
    for step_type, result in step_results.items():
        if result.status != StepStatus.FAILED or not result.error:
            continue
        entries.append(
            TaskErrorLogEntry(
                timestamp=result.completed_at or result.started_at or utcnow_iso(),
                step=step_type,
                error=result.error,
                context={"started_at": result.started_at, "completed_at": result.completed_at},
            )
        )
    # ISO-8601 UTC strings sort chronologically
    entries.sort(key=lambda e: (e.timestamp, e.step))
    return entries


def aggregate_error_logs(step_results: Mapping[str, StepResult]) -> str:
    """JSON array with one entry per failed step, or "" when nothing failed."""
    entries = error_log_entries(step_results)
    if not entries:
        return ""
    return _serialize(entries)


def format_error(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    return str(error)


def create_error_log_entry(step: str, error: Any, context: Optional[Dict[str, Any]] = None) -> TaskErrorLogEntry:
    stack = None
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return TaskErrorLogEntry(
        timestamp=utcnow_iso(),
        step=step,
        error=format_error(error),
        stack=stack,
        context=context,
    )


def append_error_entries(step_results: Mapping[str, StepResult], extra: Iterable[TaskErrorLogEntry]) -> str:
    """Step failures followed by ``extra`` entries, serialized."""
    return _serialize(error_log_entries(step_results) + list(extra))


def calculate_progress(step_results: Mapping[str, StepResult], expected_steps: Iterable[str]) -> int:
    expected = list(expected_steps)
    if not expected:
        return 0
    done = sum(1 for s in expected if s in step_results and step_results[s].is_terminal)
    return round(done * 100 / len(expected))
