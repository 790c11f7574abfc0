"""Parent/step job orchestration.

A flow is a parent job plus its step jobs. Step jobs run independently (and
concurrently on different workers); each outcome is cached on the parent's
job data so a retry never re-executes a completed step. Once every child is
terminal the queue runs the parent, which reconciles missing results,
applies the partial-success policy and reports the final status.
"""

import logging
import math
from typing import Any, Callable, Dict, Mapping, Optional

from ..queue.jobs import Job, JobQueue, JobState
from .aggregator import (
    aggregate_error_logs,
    append_error_entries,
    build_task_result,
    calculate_progress,
    create_error_log_entry,
    format_error,
    merge_step_result,
    merge_step_results,
)
from .errors import FlowAggregationError, StepExecutionError
from .options import is_exhausted
from .policy import PartialSuccessPolicy
from .reporter import TaskStatusReporter, clamp_progress
from .steps import JobContext, StepRegistry
from .types import (
    ParentJobData,
    StepJobData,
    StepResult,
    StepStatus,
    TaskResult,
    TaskStatus,
    ms_to_iso,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

SKIPPED_DEPENDENCY = {"skipped": True, "reason": "dependency_reference"}

EventHandler = Callable[[Job, Any], None]


class FlowOrchestrator:
    def __init__(
        self,
        name: str,
        registry: StepRegistry,
        policy: PartialSuccessPolicy,
        reporter: TaskStatusReporter,
        queue: JobQueue,
    ):
        self.name = name
        self.registry = registry
        self.policy = policy
        self.reporter = reporter
        self.queue = queue
        self.event_handlers: Dict[str, EventHandler] = {
            "active": self.on_active,
            "completed": self.on_completed,
            "failed": self.on_failed,
        }

    # -- dispatch ---------------------------------------------------------

    def process(self, job: Job) -> Any:
        """Run a job and return its JSON-ready return value."""
        if job.is_parent:
            return self.process_parent_job(job).model_dump(mode="json", exclude_none=True)

        if not job.data.get("step_type"):
            logger.debug("Skipping job %s (%s) - no step_type, dependency reference", job.id, job.name)
            return dict(SKIPPED_DEPENDENCY)

        return self.process_step_job(job).model_dump(mode="json", exclude_none=True)

    def handle_event(self, event: str, job: Job, payload: Any = None) -> None:
        """Invoke the lifecycle hook for ``event``; hooks never raise."""
        handler = self.event_handlers.get(event)
        if handler is None:
            raise ValueError(f"Unknown queue event: {event}")
        try:
            handler(job, payload)
        except Exception:
            logger.exception("Failed to handle %s event for job %s (%s)", event, job.id, job.name)

    # -- parent -----------------------------------------------------------

    def process_parent_job(self, job: Job) -> TaskResult:
        parent = ParentJobData.model_validate(job.data)
        logger.info("Processing parent job %s for task %s", job.id, parent.task_id)

        children_values = self.queue.get_children_values(job.id)
        logger.info("All children completed for task %s (%d values)", parent.task_id, len(children_values))

        reported = [
            StepResult.model_validate(value)
            for value in children_values.values()
            if isinstance(value, dict) and value.get("step_type")
        ]
        aggregated = merge_step_results(parent.step_results, reported)
        aggregated = self.reconcile_failed_children(job.id, aggregated)

        cached = self.queue.update_step_results(job.id, list(aggregated.values()))
        step_results = cached.step_results
        logger.info("Cached %d step results for task %s", len(step_results), parent.task_id)

        decision = self.policy(parent.enabled_steps, step_results)
        logger.info(
            "%s results for task %s: successful=%s failed=%s",
            self.name,
            parent.task_id,
            decision.successful,
            decision.failed,
        )
        if not decision.accept:
            logger.error("Task %s failed: %s %s", parent.task_id, decision.reason, decision.failed)
            raise FlowAggregationError(self.name, decision.reason, decision.failed)

        if decision.failed:
            logger.info("Task %s completed with partial results", parent.task_id)
        else:
            logger.info("Task %s completed successfully with all steps", parent.task_id)

        return build_task_result(step_results, started_at=ms_to_iso(job.timestamp), completed_at=utcnow_iso())

    def reconcile_failed_children(self, parent_id: str, step_results: Mapping[str, StepResult]) -> Dict[str, StepResult]:
        """Synthesize failed entries for children that died without a result.

        Only this parent's children are scanned. A lookup error leaves the
        map untouched; the policy then treats missing steps as failed.
        """
        reconciled = dict(step_results)
        try:
            children = self.queue.get_children(parent_id, (JobState.FAILED,))
        except Exception as exc:
            logger.warning("Failed to check for failed child jobs of %s: %s", parent_id, exc)
            return reconciled

        for child in children:
            step_type = child.data.get("step_type")
            if not step_type or child.data.get("parent_job_id") != parent_id:
                continue
            current = reconciled.get(step_type)
            if current is not None and current.is_terminal:
                continue
            reconciled[step_type] = StepResult.failed(
                step_type,
                child.failed_reason or "Job failed without reason",
                started_at=ms_to_iso(child.processed_on or child.timestamp),
                completed_at=ms_to_iso(child.finished_on),
            )
            logger.warning("Found failed child job %s for step %s without a result", child.id, step_type)
        return reconciled

    # -- step -------------------------------------------------------------

    def _parent_data(self, parent_job_id: Optional[str]) -> Optional[ParentJobData]:
        if not parent_job_id:
            return None
        parent = self.queue.get_job(parent_job_id)
        if parent is None:
            return None
        return ParentJobData.model_validate(parent.data)

    def process_step_job(self, job: Job) -> StepResult:
        data = StepJobData.model_validate(job.data)
        step_type = data.step_type
        logger.info("Processing step %s for job %s", step_type, job.id)

        parent = self._parent_data(data.parent_job_id)
        if parent is not None:
            cached = parent.step_results.get(step_type)
            if cached is not None and cached.status == StepStatus.COMPLETED:
                logger.info("Step %s already completed in previous attempt, using cached result", step_type)
                return cached

        route = self.registry.route(step_type)
        started_at = utcnow_iso()
        context = JobContext(
            job_id=job.id,
            task_id=data.task_id,
            workspace_id=data.workspace_id,
            step_type=step_type,
            attempt=job.attempts_made + 1,
            report_progress=lambda progress: self._report_step_progress(data, progress),
        )

        try:
            output = route.processor.process(data.input, context)
        except Exception as exc:
            message = format_error(exc)
            logger.error("Step %s failed: %s", step_type, message, exc_info=True)
            if route.allow_independent_failure:
                logger.warning("Step %s failed but allowing partial success", step_type)
                return StepResult.failed(step_type, message, started_at=started_at)
            raise StepExecutionError(step_type, message) from exc

        logger.info("Step %s completed successfully", step_type)
        return StepResult.completed(step_type, output, started_at=started_at)

    def _report_step_progress(self, data: StepJobData, progress: float) -> None:
        if not math.isfinite(progress):
            logger.warning("Ignoring non-finite progress %r from step %s", progress, data.step_type)
            return
        parent = self._parent_data(data.parent_job_id)
        if parent is None or not parent.scheduled_steps:
            return
        share = clamp_progress(progress) / len(parent.scheduled_steps)
        overall = calculate_progress(parent.step_results, parent.scheduled_steps) + share
        self.reporter.advance_progress(data.task_id, overall)

    # -- lifecycle hooks --------------------------------------------------

    def on_active(self, job: Job, payload: Any = None) -> None:
        if job.is_parent:
            parent = ParentJobData.model_validate(job.data)
            result = build_task_result(parent.step_results, started_at=utcnow_iso())
            self.reporter.update_task(parent.task_id, status=TaskStatus.RUNNING, result=result)
            logger.info("Task %s started", parent.task_id)
            return

        data = StepJobData.model_validate(job.data)
        if not data.step_type or not data.parent_job_id:
            return
        parent_job = self.queue.get_job(data.parent_job_id)
        if parent_job is None:
            logger.warning("Parent job %s not found for step %s", data.parent_job_id, data.step_type)
            return
        parent = ParentJobData.model_validate(parent_job.data)
        # shown as running in the report only; the cache keeps terminal outcomes
        partial = merge_step_result(parent.step_results, StepResult.running(data.step_type))
        result = build_task_result(partial, started_at=ms_to_iso(parent_job.timestamp))
        result.current_step = data.step_type
        self.reporter.update_task(data.task_id, status=TaskStatus.RUNNING, result=result)
        logger.debug("Step %s started for task %s", data.step_type, data.task_id)

    def on_completed(self, job: Job, return_value: Any = None) -> None:
        logger.info("Job %s (%s) completed", job.id, job.name)
        if job.is_parent:
            self._parent_completed(job, return_value)
        else:
            self._step_completed(job, return_value)

    def _parent_completed(self, job: Job, return_value: Any) -> None:
        parent = ParentJobData.model_validate(job.data)
        result = TaskResult.model_validate(return_value)
        self.reporter.update_task(
            parent.task_id,
            status=TaskStatus.SUCCESS,
            progress=100,
            result=result,
            error_log=aggregate_error_logs(result.steps),
        )
        logger.info(
            "Task %s completed successfully: %d steps completed, %d steps failed",
            parent.task_id,
            len(result.completed_steps),
            len(result.failed_steps),
        )

    def _step_completed(self, job: Job, return_value: Any) -> None:
        data = StepJobData.model_validate(job.data)
        if not data.step_type or not data.parent_job_id:
            return
        if not isinstance(return_value, dict) or return_value.get("skipped") or not return_value.get("step_type"):
            return
        result = StepResult.model_validate(return_value)
        self._record_step_outcome(data, result, status=None)
        logger.info("Step %s %s for task %s", result.step_type, result.status.value, data.task_id)

    def _record_step_outcome(self, data: StepJobData, result: StepResult, status: Optional[TaskStatus]) -> bool:
        parent_job = self.queue.get_job(data.parent_job_id)
        if parent_job is None:
            logger.warning("Parent job %s not found for step %s", data.parent_job_id, result.step_type)
            return False
        cached = self.queue.update_step_results(parent_job.id, [result])
        task_result = build_task_result(cached.step_results, started_at=ms_to_iso(parent_job.timestamp))
        task_result.current_step = result.step_type
        self.reporter.update_task(
            data.task_id,
            status=status,
            result=task_result,
            error_log=aggregate_error_logs(cached.step_results),
        )
        self.reporter.advance_progress(data.task_id, calculate_progress(cached.step_results, cached.scheduled_steps))
        return True

    def on_failed(self, job: Job, error: Any = None) -> None:
        logger.error("Job %s (%s) failed: %s", job.id, job.name, format_error(error))
        if job.is_parent:
            self._parent_failed(job, error)
        else:
            self._step_failed(job, error)

    def _exhausted(self, job: Job) -> bool:
        return job.state == JobState.FAILED or is_exhausted(job.attempts_made, job.max_attempts)

    def _parent_failed(self, job: Job, error: Any) -> None:
        current = self.queue.get_job(job.id) or job
        parent = ParentJobData.model_validate(current.data)
        if not self._exhausted(job):
            logger.warning(
                "Parent job %s failed (attempt %d/%d) for task %s, will retry",
                job.id,
                job.attempts_made,
                job.max_attempts,
                parent.task_id,
            )
            self.reporter.update_task(parent.task_id, status=TaskStatus.RUNNING)
            return

        step_results = self.reconcile_failed_children(job.id, parent.step_results)
        result = build_task_result(
            step_results,
            started_at=ms_to_iso(job.timestamp),
            completed_at=ms_to_iso(job.finished_on) or utcnow_iso(),
        )
        error_log = append_error_entries(step_results, [create_error_log_entry("parent", error)])
        self.reporter.update_task(parent.task_id, status=TaskStatus.FAILED, result=result, error_log=error_log)
        logger.error("Task %s failed: %d steps failed", parent.task_id, len(result.failed_steps))

    def _step_failed(self, job: Job, error: Any) -> None:
        data = StepJobData.model_validate(job.data)
        if not data.step_type or not data.parent_job_id:
            return

        started_at = ms_to_iso(job.processed_on or job.timestamp)
        if not self._exhausted(job):
            logger.warning(
                "Step %s failed (attempt %d/%d) for task %s, will retry",
                data.step_type,
                job.attempts_made,
                job.max_attempts,
                data.task_id,
            )
            parent_job = self.queue.get_job(data.parent_job_id)
            if parent_job is None:
                self.reporter.update_status(data.task_id, TaskStatus.RUNNING)
                return
            parent = ParentJobData.model_validate(parent_job.data)
            partial = merge_step_result(parent.step_results, StepResult.running(data.step_type, started_at))
            result = build_task_result(partial, started_at=ms_to_iso(parent_job.timestamp))
            self.reporter.update_task(data.task_id, status=TaskStatus.RUNNING, result=result)
            return

        logger.error(
            "Step %s exhausted all %d retry attempts for task %s",
            data.step_type,
            job.max_attempts,
            data.task_id,
        )
        failed = StepResult.failed(
            data.step_type,
            format_error(error),
            started_at=started_at,
            completed_at=ms_to_iso(job.finished_on),
        )
        # a single exhausted step does not fail the task; the parent decides
        if not self._record_step_outcome(data, failed, status=TaskStatus.RUNNING):
            # no parent left to decide, so the task cannot finish any other way
            entry = create_error_log_entry(data.step_type, error, {"job_id": job.id, "attempts_made": job.attempts_made})
            self.reporter.update_task(data.task_id, status=TaskStatus.FAILED, error_log=append_error_entries({}, [entry]))
