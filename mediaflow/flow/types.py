from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if not value:
        return None
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepResult(BaseModel):
    """Outcome of one step execution.

    Terminal results (completed/failed) are never mutated; a newer attempt
    produces a new instance that replaces a running or failed entry.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    step_type: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.FAILED)

    @classmethod
    def running(cls, step_type: str, started_at: Optional[str] = None) -> "StepResult":
        return cls(step_type=step_type, status=StepStatus.RUNNING, started_at=started_at or utcnow_iso())

    @classmethod
    def completed(cls, step_type: str, output: Any, started_at: Optional[str] = None) -> "StepResult":
        return cls(
            step_type=step_type,
            status=StepStatus.COMPLETED,
            output=output,
            started_at=started_at,
            completed_at=utcnow_iso(),
        )

    @classmethod
    def failed(
        cls,
        step_type: str,
        error: str,
        started_at: Optional[str] = None,
        completed_at: Optional[str] = None,
    ) -> "StepResult":
        return cls(
            step_type=step_type,
            status=StepStatus.FAILED,
            error=error,
            started_at=started_at,
            completed_at=completed_at or utcnow_iso(),
        )


class TaskResult(BaseModel):
    steps: Dict[str, StepResult] = Field(default_factory=dict)
    completed_steps: List[str] = Field(default_factory=list)
    failed_steps: List[str] = Field(default_factory=list)
    current_step: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class TaskErrorLogEntry(BaseModel):
    timestamp: str
    step: str
    error: str
    stack: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class ParentJobData(BaseModel):
    """Configuration plus the cache of step outcomes; never execution artifacts."""

    model_config = ConfigDict(extra="allow")

    task_id: str
    workspace_id: str
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    # steps the policy judges, and every step the flow scheduled
    enabled_steps: List[str] = Field(default_factory=list)
    scheduled_steps: List[str] = Field(default_factory=list)


class StepJobData(BaseModel):
    model_config = ConfigDict(extra="allow")

    task_id: str
    workspace_id: str
    parent_job_id: Optional[str] = None
    step_type: Optional[str] = None  # absent on dependency markers
    input: Dict[str, Any] = Field(default_factory=dict)
