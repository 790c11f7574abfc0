import logging
import traceback
from typing import Any

from ..flow.aggregator import format_error
from ..flow.options import backoff_delay, is_exhausted
from ..flow.orchestrator import FlowOrchestrator
from .jobs import JobQueue, JobState

logger = logging.getLogger(__name__)


class FlowRunner:
    """Drives one job through active -> completed/failed on a Celery worker.

    Lifecycle events go through the orchestrator's dispatch table. Retries
    are delegated to Celery (``task.retry``) with the step's backoff; the job
    record stays the source of truth for attempts made.
    """

    def __init__(self, orchestrator: FlowOrchestrator, queue: JobQueue):
        self.orchestrator = orchestrator
        self.queue = queue

    def run(self, task: Any, job_id: str) -> Any:
        job = self.queue.get_job(job_id)
        if job is None:
            # expired or never stored; nothing to run, the parent reconciles
            logger.error("Job %s not found in queue %s", job_id, self.orchestrator.name)
            return None
        if job.state in (JobState.COMPLETED, JobState.FAILED):
            logger.info("Job %s (%s) already %s, skipping redelivery", job.id, job.name, job.state.value)
            return job.return_value

        job = self.queue.mark_active(job_id)
        self.orchestrator.handle_event("active", job)

        try:
            value = self.orchestrator.process(job)
        except Exception as exc:
            return self._fail(task, job, exc)

        job = self.queue.mark_completed(job_id, value)
        self.orchestrator.handle_event("completed", job, value)
        return value

    def _fail(self, task: Any, job, exc: Exception) -> Any:
        reason = format_error(exc)
        retryable = getattr(exc, "retryable", True)

        if retryable and not is_exhausted(job.attempts_made + 1, job.max_attempts):
            job = self.queue.mark_retrying(job.id, reason)
            self.orchestrator.handle_event("failed", job, exc)
            countdown = backoff_delay(job.opts.backoff, job.attempts_made)
            logger.warning(
                "Job %s (%s) retrying in %.1fs (attempt %d/%d): %s",
                job.id,
                job.name,
                countdown,
                job.attempts_made,
                job.max_attempts,
                reason,
            )
            # attempts are counted on the job record, not by Celery
            raise task.retry(exc=exc, countdown=countdown, max_retries=None)

        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        job = self.queue.mark_failed(job.id, reason, stack)
        self.orchestrator.handle_event("failed", job, exc)
        if job.is_parent:
            raise exc
        # a terminal step must not break the flow, or the parent would never run
        return None
