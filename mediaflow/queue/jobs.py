import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import orjson
import redis
from pydantic import BaseModel, Field

from ..config import settings
from ..flow.aggregator import merge_step_results
from ..flow.errors import JobNotFoundError
from ..flow.options import StepJobOptions
from ..flow.types import ParentJobData, StepResult

PARENT_JOB_NAME = "parent"


def now_ms() -> int:
    return int(time.time() * 1000)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    queue: str
    data: Dict[str, Any] = Field(default_factory=dict)
    opts: StepJobOptions = Field(default_factory=StepJobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    parent_id: Optional[str] = None
    children_ids: List[str] = Field(default_factory=list)
    failed_reason: Optional[str] = None
    stacktrace: Optional[str] = None
    return_value: Any = None
    timestamp: int = Field(default_factory=now_ms)
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None

    @property
    def is_parent(self) -> bool:
        return self.name == PARENT_JOB_NAME

    @property
    def max_attempts(self) -> int:
        return self.opts.attempts


class JobQueue(Protocol):
    """What the orchestrator and runner need from the queue."""

    def add_jobs(self, parent: Job, children: List[Job]) -> None: ...

    def remove_jobs(self, parent_id: str) -> None: ...
    def get_job(self, job_id: str) -> Optional[Job]: ...

    def get_children(self, parent_id: str, states: Iterable[JobState] = ...) -> List[Job]: ...

    def get_children_values(self, parent_id: str) -> Dict[str, Any]: ...

    def update_data(self, job_id: str, data: Dict[str, Any]) -> None: ...

    def update_step_results(self, job_id: str, results: List[StepResult]) -> ParentJobData: ...

    def mark_active(self, job_id: str) -> Job: ...

    def mark_completed(self, job_id: str, return_value: Any) -> Job: ...

    def mark_failed(self, job_id: str, reason: str, stacktrace: Optional[str] = None) -> Job: ...

    def mark_retrying(self, job_id: str, reason: str) -> Job: ...


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode()


class RedisJobQueue:
    """Job records as Redis hashes: ``job`` holds the record, ``data`` the job data.

    The two live in separate fields so lifecycle bookkeeping and job-data
    updates never overwrite each other.
    """

    def __init__(self, queue_name: str, client: redis.Redis | None = None, retention_seconds: int | None = None):
        self.queue_name = queue_name
        self.r = client or redis.from_url(settings.redis_url, decode_responses=True)
        self.retention_seconds = retention_seconds or settings.job_retention_seconds

    def _key(self, job_id: str) -> str:
        return f"{self.queue_name}:job:{job_id}"

    def _children_key(self, parent_id: str) -> str:
        return f"{self.queue_name}:job:{parent_id}:children"

    def _record(self, job: Job) -> Dict[str, str]:
        return {
            "job": _dumps(job.model_dump(mode="json", exclude={"data"})),
            "data": _dumps(job.data),
        }

    def add_jobs(self, parent: Job, children: List[Job]) -> None:
        pipe = self.r.pipeline()
        pipe.hset(self._key(parent.id), mapping=self._record(parent))
        for child in children:
            pipe.hset(self._key(child.id), mapping=self._record(child))
        if children:
            pipe.sadd(self._children_key(parent.id), *[c.id for c in children])
        pipe.execute()

    def remove_jobs(self, parent_id: str) -> None:
        """Delete a flow that never reached the broker."""
        parent = self.get_job(parent_id)
        if parent is None:
            return
        keys = [self._key(parent_id), self._children_key(parent_id)]
        keys.extend(self._key(child_id) for child_id in parent.children_ids)
        self.r.delete(*keys)

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.r.hgetall(self._key(job_id))
        if not raw:
            return None
        record = orjson.loads(raw["job"])
        record["data"] = orjson.loads(raw.get("data") or "{}")
        return Job.model_validate(record)

    def _require(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_children(self, parent_id: str, states: Iterable[JobState] = (JobState.COMPLETED, JobState.FAILED)) -> List[Job]:
        wanted = set(states)
        children = []
        for child_id in sorted(self.r.smembers(self._children_key(parent_id))):
            child = self.get_job(child_id)
            if child is not None and child.state in wanted:
                children.append(child)
        return children

    def get_children_values(self, parent_id: str) -> Dict[str, Any]:
        return {
            child.id: child.return_value
            for child in self.get_children(parent_id, (JobState.COMPLETED,))
        }

    def get_counts(self) -> Dict[str, int]:
        """Jobs per state; ``delayed`` are waiting jobs backing off before a retry."""
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        for key in self.r.scan_iter(match=f"{self.queue_name}:job:*"):
            if key.endswith(":children"):
                continue
            raw = self.r.hget(key, "job")
            if raw is None:
                continue
            record = orjson.loads(raw)
            state = record["state"]
            if state == JobState.WAITING.value and record.get("attempts_made"):
                state = "delayed"
            counts[state] += 1
        return counts

    def update_data(self, job_id: str, data: Dict[str, Any]) -> None:
        self.r.hset(self._key(job_id), "data", _dumps(data))

    def update_step_results(self, job_id: str, results: List[StepResult]) -> ParentJobData:
        """Merge ``results`` into the parent's cached step results atomically.

        WATCH/MULTI turns the read-modify-write into a compare-and-swap;
        redis-py re-runs the callable when a sibling step wrote in between.
        """
        key = self._key(job_id)

        def merge(pipe) -> ParentJobData:
            raw = pipe.hget(key, "data")
            if raw is None:
                raise JobNotFoundError(job_id)
            data = ParentJobData.model_validate(orjson.loads(raw))
            merged = merge_step_results(data.step_results, results)
            updated = data.model_copy(update={"step_results": merged})
            pipe.multi()
            pipe.hset(key, "data", _dumps(updated.model_dump(mode="json")))
            return updated

        return self.r.transaction(merge, key, value_from_callable=True)

    def _transition(self, job_id: str, terminal: bool = False, **changes: Any) -> Job:
        job = self._require(job_id)
        job = job.model_copy(update=changes)
        pipe = self.r.pipeline()
        pipe.hset(self._key(job_id), "job", _dumps(job.model_dump(mode="json", exclude={"data"})))
        if terminal and job.parent_id is None:
            # children expire with their parent so reconciliation can still read them
            pipe.expire(self._key(job_id), self.retention_seconds)
            for child_id in job.children_ids:
                pipe.expire(self._key(child_id), self.retention_seconds)
            pipe.expire(self._children_key(job_id), self.retention_seconds)
        pipe.execute()
        return job

    def mark_active(self, job_id: str) -> Job:
        return self._transition(job_id, state=JobState.ACTIVE, processed_on=now_ms(), finished_on=None)

    def mark_completed(self, job_id: str, return_value: Any) -> Job:
        return self._transition(
            job_id,
            terminal=True,
            state=JobState.COMPLETED,
            return_value=return_value,
            finished_on=now_ms(),
        )

    def mark_failed(self, job_id: str, reason: str, stacktrace: Optional[str] = None) -> Job:
        job = self._require(job_id)
        return self._transition(
            job_id,
            terminal=True,
            state=JobState.FAILED,
            attempts_made=job.attempts_made + 1,
            failed_reason=reason,
            stacktrace=stacktrace,
            finished_on=now_ms(),
        )

    def mark_retrying(self, job_id: str, reason: str) -> Job:
        job = self._require(job_id)
        return self._transition(
            job_id,
            state=JobState.WAITING,
            attempts_made=job.attempts_made + 1,
            failed_reason=reason,
            finished_on=now_ms(),
        )
