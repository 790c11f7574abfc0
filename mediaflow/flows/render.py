from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..flow.options import get_step_job_options
from ..flow.policy import all_succeeded
from ..flow.steps import StepRegistry
from ..flow.types import ParentJobData
from ..queue.producer import ChildJobDefinition, FlowDefinition
from ..services.media import MediaServiceClient, RemoteStepProcessor

TASK_TYPE = "render_timeline"
QUEUE_NAME = "render"

PREPARE = "render:prepare"
EXECUTE = "render:execute"
FINALIZE = "render:finalize"

STEPS = [PREPARE, EXECUTE, FINALIZE]

policy = all_succeeded


class RenderTimelinePayload(BaseModel):
    timeline_id: str
    version: int = 1
    tracks: List[Dict[str, Any]] = Field(default_factory=list)
    output: Dict[str, Any] = Field(default_factory=dict)


def build_flow(task_id: str, workspace_id: str, payload: RenderTimelinePayload) -> FlowDefinition:
    base = {"task_id": task_id, "workspace_id": workspace_id}
    inputs = {
        PREPARE: {"timeline_id": payload.timeline_id, "tracks": payload.tracks},
        EXECUTE: {"timeline_id": payload.timeline_id, "version": payload.version, "output": payload.output},
        FINALIZE: {"timeline_id": payload.timeline_id, "version": payload.version},
    }
    # strictly sequential: each step is its own stage
    children = [
        ChildJobDefinition(
            name=step_type,
            data={**base, "step_type": step_type, "input": inputs[step_type]},
            opts=get_step_job_options(step_type),
            stage=stage,
        )
        for stage, step_type in enumerate(STEPS)
    ]
    return FlowDefinition(
        task_type=TASK_TYPE,
        queue_name=QUEUE_NAME,
        data=ParentJobData(**base, enabled_steps=list(STEPS), scheduled_steps=list(STEPS), timeline_id=payload.timeline_id),
        children=children,
    )


def build_registry(client: MediaServiceClient) -> StepRegistry:
    registry = StepRegistry()
    for step_type in STEPS:
        registry.register(step_type, RemoteStepProcessor(step_type.replace(":", "_"), client))
    return registry
