import logging
import math
from typing import Optional

from ..storage.repo import Repo
from .types import TaskResult, TaskStatus

logger = logging.getLogger(__name__)


def clamp_progress(progress: float) -> int:
    return max(0, min(100, round(progress)))


class TaskStatusReporter:
    """Writes status/progress/result/error log onto the Task record.

    Every call is best-effort: a store outage is logged and swallowed so it
    never turns into a job failure and a spurious retry.
    """

    def __init__(self, repo: Repo):
        self.repo = repo

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        try:
            self.repo.update(task_id, status=status.value)
            logger.info("Updated task %s status to %s", task_id, status.value)
        except Exception as exc:
            logger.warning("Failed to update task %s status: %s", task_id, exc)

    def _progress(self, task_id: str, progress: float) -> Optional[int]:
        if not math.isfinite(progress):
            logger.warning("Ignoring non-finite progress %r for task %s", progress, task_id)
            return None
        return clamp_progress(progress)

    def update_task(
        self,
        task_id: str,
        status: Optional[TaskStatus] = None,
        progress: Optional[float] = None,
        result: Optional[TaskResult] = None,
        error_log: Optional[str] = None,
    ) -> None:
        try:
            fields = {}
            if status is not None:
                fields["status"] = status.value
            if progress is not None:
                value = self._progress(task_id, progress)
                if value is not None:
                    fields["progress"] = value
            if result is not None:
                fields["result"] = result.model_dump(mode="json", exclude_none=True)
            if error_log:
                fields["error_log"] = error_log
            if not fields:
                return
            self.repo.update(task_id, **fields)
            logger.debug(
                "Updated task %s: status=%s, progress=%s",
                task_id,
                fields.get("status", "unchanged"),
                f"{fields['progress']}%" if "progress" in fields else "unchanged",
            )
        except Exception as exc:
            logger.warning("Failed to update task %s: %s", task_id, exc)

    def advance_progress(self, task_id: str, progress: float) -> None:
        """Raise the stored progress to ``progress``; never lowers it.

        Sibling steps report concurrently, so a later report may be behind
        an earlier one.
        """
        try:
            value = self._progress(task_id, progress)
            if value is None:
                return
            self.repo.raise_progress(task_id, value)
            logger.debug("Advanced task %s progress to at least %d%%", task_id, value)
        except Exception as exc:
            logger.warning("Failed to update task %s progress: %s", task_id, exc)
