from pydantic import BaseModel
from typing import Optional

class TaskRecord(BaseModel):
    taskid: str
    task_type: str = ""
    workspace_id: str = ""
    status: str  # queued | running | success | failed
    progress: int = 0
    result_json: Optional[str] = None  # orjson string of TaskResult
    error_log: Optional[str] = None  # JSON array of error entries
    parent_job_id: Optional[str] = None
