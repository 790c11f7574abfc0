from collections import defaultdict
import fnmatch
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from mediaflow.flow.aggregator import merge_step_results
from mediaflow.flow.errors import JobNotFoundError
from mediaflow.flow.reporter import TaskStatusReporter
from mediaflow.flow.types import ParentJobData, StepResult
from mediaflow.queue.jobs import Job, JobState, now_ms


class MemoryJobQueue:
    """In-process stand-in for RedisJobQueue."""

    def __init__(self):
        self.jobs: Dict[str, Job] = {}

    def add_jobs(self, parent: Job, children: List[Job]) -> None:
        parent.children_ids = [c.id for c in children]
        self.jobs[parent.id] = parent
        for child in children:
            self.jobs[child.id] = child

    def remove_jobs(self, parent_id: str) -> None:
        parent = self.jobs.pop(parent_id, None)
        for child_id in parent.children_ids if parent else []:
            self.jobs.pop(child_id, None)

    def get_job(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def get_children(self, parent_id, states=(JobState.COMPLETED, JobState.FAILED)):
        return [
            self.get_job(cid)
            for cid in self.jobs[parent_id].children_ids
            if self.jobs[cid].state in set(states)
        ]

    def get_children_values(self, parent_id) -> Dict[str, Any]:
        return {c.id: c.return_value for c in self.get_children(parent_id, (JobState.COMPLETED,))}

    def update_data(self, job_id: str, data: Dict[str, Any]) -> None:
        self.jobs[job_id].data = data

    def update_step_results(self, job_id: str, results: List[StepResult]) -> ParentJobData:
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        data = ParentJobData.model_validate(self.jobs[job_id].data)
        updated = data.model_copy(update={"step_results": merge_step_results(data.step_results, results)})
        self.jobs[job_id].data = updated.model_dump(mode="json")
        return updated

    def _set(self, job_id: str, **changes) -> Job:
        job = self.jobs[job_id].model_copy(update=changes)
        self.jobs[job_id] = job
        return job.model_copy(deep=True)

    def mark_active(self, job_id):
        return self._set(job_id, state=JobState.ACTIVE, processed_on=now_ms())

    def mark_completed(self, job_id, return_value):
        return self._set(job_id, state=JobState.COMPLETED, return_value=return_value, finished_on=now_ms())

    def mark_failed(self, job_id, reason, stacktrace=None):
        job = self.jobs[job_id]
        return self._set(
            job_id,
            state=JobState.FAILED,
            attempts_made=job.attempts_made + 1,
            failed_reason=reason,
            stacktrace=stacktrace,
            finished_on=now_ms(),
        )

    def mark_retrying(self, job_id, reason):
        job = self.jobs[job_id]
        return self._set(job_id, state=JobState.WAITING, attempts_made=job.attempts_made + 1, failed_reason=reason)


class FakeRedis:
    """Just the commands RedisJobQueue and Repo use, WATCH included.

    ``interleave`` holds callables run between a transaction's callable and
    its commit, standing in for another client writing to a watched key.
    """

    def __init__(self):
        self.hashes = defaultdict(dict)
        self.sets = defaultdict(set)
        self.ttls = {}
        self.versions = defaultdict(int)
        self.interleave = []
        self.transactions = 0

    def hset(self, key, field=None, value=None, mapping=None):
        if mapping:
            self.hashes[key].update({k: str(v) for k, v in mapping.items()})
        if field is not None:
            self.hashes[key][field] = str(value)
        self.versions[key] += 1

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def sadd(self, key, *members):
        self.sets[key].update(members)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def delete(self, *keys):
        for key in keys:
            self.hashes.pop(key, None)
            self.sets.pop(key, None)
            self.versions[key] += 1

    def scan_iter(self, match="*"):
        return [key for key in list(self.hashes) + list(self.sets) if fnmatch.fnmatchcase(key, match)]

    def pipeline(self):
        return FakePipeline(self)

    def transaction(self, func, *watches, value_from_callable=False):
        while True:
            self.transactions += 1
            watched = {key: self.versions[key] for key in watches}
            pipe = FakePipeline(self)
            value = func(pipe)
            if self.interleave:
                self.interleave.pop(0)()
            if any(self.versions[key] != version for key, version in watched.items()):
                # redis-py raises WatchError here and calls func again
                continue
            pipe.execute()
            return value if value_from_callable else []


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.queued = None

    def __getattr__(self, name):
        command = getattr(self.redis, name)
        if self.queued is None:
            return command
        return lambda *args, **kwargs: self.queued.append((command, args, kwargs))

    def multi(self):
        self.queued = []

    def execute(self):
        for command, args, kwargs in self.queued or []:
            command(*args, **kwargs)
        self.queued = None
        return []


class MemoryRepo:
    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def update(self, taskid, **fields):
        self.calls.append({"taskid": taskid, **fields})
        self.records.setdefault(taskid, {}).update(fields)

    def raise_progress(self, taskid, progress):
        self.calls.append({"taskid": taskid, "raise_progress": progress})
        record = self.records.setdefault(taskid, {})
        record["progress"] = max(record.get("progress", 0), progress)


class BrokenRepo:
    def update(self, taskid, **fields):
        raise ConnectionError("task store unavailable")

    def raise_progress(self, taskid, progress):
        raise ConnectionError("task store unavailable")


@pytest.fixture
def queue():
    return MemoryJobQueue()


@pytest.fixture
def repo():
    return MemoryRepo()


@pytest.fixture
def reporter(repo):
    return TaskStatusReporter(repo)


@pytest.fixture
def add_flow(queue):
    """Store a parent with one child per step type; returns (parent, {step_type: child})."""

    def _add(step_types, enabled=None, task_id="task-1", step_results=None, attempts=3):
        parent = Job(
            name="parent",
            queue="labels",
            data=ParentJobData(
                task_id=task_id,
                workspace_id="ws-1",
                step_results=step_results or {},
                enabled_steps=list(enabled if enabled is not None else step_types),
                scheduled_steps=list(step_types),
            ).model_dump(mode="json"),
        )
        children = {}
        for step_type in step_types:
            child = Job(
                name=step_type,
                queue="labels",
                data={
                    "task_id": task_id,
                    "workspace_id": "ws-1",
                    "step_type": step_type,
                    "parent_job_id": parent.id,
                    "input": {"media_id": "media-1"},
                },
                parent_id=parent.id,
            )
            child.opts.attempts = attempts
            children[step_type] = child
        queue.add_jobs(parent, list(children.values()))
        return queue.get_job(parent.id), {k: queue.get_job(v.id) for k, v in children.items()}

    return _add
