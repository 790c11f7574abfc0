from typing import List


class FlowError(Exception):
    """Base class for orchestration errors."""

    retryable = True


class UnknownStepTypeError(FlowError):
    retryable = False

    def __init__(self, step_type: str):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}")


class StepExecutionError(FlowError):
    """A step processor raised; the queue retries the step job."""

    def __init__(self, step_type: str, message: str):
        self.step_type = step_type
        super().__init__(message)


class FlowAggregationError(FlowError):
    """The partial-success policy rejected the task."""

    retryable = False

    def __init__(self, flow_name: str, reason: str, failed_steps: List[str]):
        self.flow_name = flow_name
        self.reason = reason
        self.failed_steps = list(failed_steps)
        super().__init__(f"{flow_name} task failed: {reason} ({', '.join(self.failed_steps)})")


class JobNotFoundError(FlowError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")
