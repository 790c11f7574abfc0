from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..flow.options import get_step_job_options
from ..flow.policy import all_succeeded
from ..flow.steps import StepRegistry
from ..flow.types import ParentJobData
from ..queue.producer import ChildJobDefinition, FlowDefinition
from ..services.media import MediaServiceClient, RemoteStepProcessor

TASK_TYPE = "process_upload"
QUEUE_NAME = "transcode"

PROBE = "transcode:probe"
THUMBNAIL = "transcode:thumbnail"
SPRITE = "transcode:sprite"
FILMSTRIP = "transcode:filmstrip"
TRANSCODE = "transcode:transcode"
AUDIO = "transcode:audio"

# output steps, in the order they are scheduled after probing
OUTPUT_STEPS = [THUMBNAIL, SPRITE, FILMSTRIP, TRANSCODE, AUDIO]

policy = all_succeeded


class ProcessUploadPayload(BaseModel):
    upload_id: str
    media_id: str
    file_ref: str
    thumbnail: Optional[Dict[str, Any]] = None
    sprite: Optional[Dict[str, Any]] = None
    filmstrip: Optional[Dict[str, Any]] = None
    transcode: Optional[Dict[str, Any]] = None
    audio: Optional[Dict[str, Any]] = None


def build_flow(task_id: str, workspace_id: str, payload: ProcessUploadPayload) -> FlowDefinition:
    base = {"task_id": task_id, "workspace_id": workspace_id, "upload_id": payload.upload_id}
    source = {"upload_id": payload.upload_id, "media_id": payload.media_id, "file_ref": payload.file_ref}

    children = [
        ChildJobDefinition(
            name=PROBE,
            data={**base, "step_type": PROBE, "input": dict(source)},
            opts=get_step_job_options(PROBE),
            stage=0,
        )
    ]
    for step_type in OUTPUT_STEPS:
        config = getattr(payload, step_type.split(":", 1)[1])
        if config is None:
            continue
        children.append(
            ChildJobDefinition(
                name=step_type,
                data={**base, "step_type": step_type, "input": {**source, "config": config}},
                opts=get_step_job_options(step_type),
                stage=1,
            )
        )

    steps = [c.name for c in children]
    return FlowDefinition(
        task_type=TASK_TYPE,
        queue_name=QUEUE_NAME,
        data=ParentJobData(**base, enabled_steps=steps, scheduled_steps=steps, media_id=payload.media_id),
        children=children,
    )


def build_registry(client: MediaServiceClient) -> StepRegistry:
    registry = StepRegistry()
    for step_type in [PROBE] + OUTPUT_STEPS:
        registry.register(step_type, RemoteStepProcessor(step_type.replace(":", "_"), client))
    return registry
