from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

class NewTaskRequest(BaseModel):
    task_type: str  # detect_labels | process_upload | render_timeline
    workspace_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)

class TaskResponse(BaseModel):
    taskid: str

class StatusResponse(BaseModel):
    status: str  # queued | running | success | failed
    progress: int = Field(ge=0, le=100)

class ErrorLogEntry(BaseModel):
    timestamp: str
    step: str
    error: str
    stack: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class ResultResponse(BaseModel):
    status: str
    steps: Dict[str, Any]
    completed_steps: List[str]
    failed_steps: List[str]
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    errors: List[ErrorLogEntry] = Field(default_factory=list)

class QueueMetrics(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
