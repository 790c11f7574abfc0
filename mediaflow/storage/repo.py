import redis
from .schema import TaskRecord
from ..config import settings
import orjson

class Repo:
    def __init__(self, client: redis.Redis | None = None):
        self.r = client or redis.from_url(settings.redis_url, decode_responses=True)

    def _key(self, taskid: str) -> str:
        return f"task:{taskid}"

    def save(self, rec: TaskRecord):
        self.r.hset(self._key(rec.taskid), mapping={
            "task_type": rec.task_type,
            "workspace_id": rec.workspace_id,
            "status": rec.status,
            "progress": rec.progress,
            "error_log": rec.error_log or "",
            "result_json": rec.result_json or "",
            "parent_job_id": rec.parent_job_id or "",
        })

    def get(self, taskid: str) -> TaskRecord | None:
        data = self.r.hgetall(self._key(taskid))
        if not data:
            return None
        return TaskRecord(taskid=taskid,
                          task_type=data.get("task_type", ""),
                          workspace_id=data.get("workspace_id", ""),
                          status=data.get("status", "queued"),
                          progress=int(data.get("progress") or 0),
                          error_log=data.get("error_log") or None,
                          result_json=data.get("result_json") or None,
                          parent_job_id=data.get("parent_job_id") or None)

    def update(self, taskid: str, status: str | None = None, progress: int | None = None,
               result: dict | None = None, error_log: str | None = None, **extra: str):
        mapping = dict(extra)
        if status is not None:
            mapping["status"] = status
        if progress is not None:
            mapping["progress"] = progress
        if result is not None:
            mapping["result_json"] = orjson.dumps(result).decode()
        if error_log is not None:
            mapping["error_log"] = error_log
        if mapping:
            self.r.hset(self._key(taskid), mapping=mapping)

    def raise_progress(self, taskid: str, progress: int):
        key = self._key(taskid)

        def raise_(pipe):
            current = int(pipe.hget(key, "progress") or 0)
            if progress > current:
                pipe.multi()
                pipe.hset(key, "progress", progress)

        self.r.transaction(raise_, key)
