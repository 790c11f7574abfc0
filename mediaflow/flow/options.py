from typing import Dict, Literal

from pydantic import BaseModel, Field

from ..config import settings


class Backoff(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: int = Field(default=settings.step_backoff_ms, ge=0)  # milliseconds


class StepJobOptions(BaseModel):
    attempts: int = Field(default=settings.step_attempts, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)


DEFAULT_OPTIONS = StepJobOptions()

# Per-step overrides; unlisted steps use DEFAULT_OPTIONS
STEP_JOB_OPTIONS: Dict[str, StepJobOptions] = {}


def get_step_job_options(step_type: str) -> StepJobOptions:
    return STEP_JOB_OPTIONS.get(step_type, DEFAULT_OPTIONS)


def parent_job_options() -> StepJobOptions:
    return StepJobOptions(attempts=settings.parent_attempts)


def backoff_delay(backoff: Backoff, attempts_made: int) -> float:
    """Seconds to wait before the next attempt after ``attempts_made`` failures."""
    if attempts_made < 1:
        return 0.0
    if backoff.type == "fixed":
        return backoff.delay / 1000
    return backoff.delay * 2 ** (attempts_made - 1) / 1000


def is_exhausted(attempts_made: int, max_attempts: int) -> bool:
    return attempts_made >= max_attempts
