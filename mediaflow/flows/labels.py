"""Label detection flow.

The media file is uploaded to detection storage first; the detection
features then run in parallel. Each feature writes its own data, so the
task succeeds when at least one enabled feature completes.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from ..config import Settings, settings
from ..flow.options import get_step_job_options
from ..flow.policy import at_least_one_succeeded
from ..flow.steps import StepRegistry
from ..flow.types import ParentJobData
from ..queue.producer import ChildJobDefinition, FlowDefinition
from ..services.media import MediaServiceClient, RemoteStepProcessor, dedupe_label_entities

TASK_TYPE = "detect_labels"
QUEUE_NAME = "labels"
VERSION = 1

UPLOAD = "labels:upload"
LABEL_DETECTION = "labels:label_detection"
OBJECT_TRACKING = "labels:object_tracking"
FACE_DETECTION = "labels:face_detection"
PERSON_DETECTION = "labels:person_detection"
SPEECH_TRANSCRIPTION = "labels:speech_transcription"

DETECTION_STEPS = [LABEL_DETECTION, OBJECT_TRACKING, FACE_DETECTION, PERSON_DETECTION, SPEECH_TRANSCRIPTION]

policy = at_least_one_succeeded


class DetectLabelsConfig(BaseModel):
    detect_labels: bool = True
    detect_objects: bool = True
    detect_faces: bool = False
    detect_persons: bool = False
    detect_speech: bool = False
    confidence_threshold: Optional[float] = Field(default=None, ge=0, le=1)


class DetectLabelsPayload(BaseModel):
    media_id: str
    file_ref: str
    config: DetectLabelsConfig = Field(default_factory=DetectLabelsConfig)


def enabled_features(config: DetectLabelsConfig, conf: Settings = settings) -> List[str]:
    """Detection steps both switched on for the worker and requested by the task."""
    wanted = {
        LABEL_DETECTION: conf.enable_label_detection and config.detect_labels,
        OBJECT_TRACKING: conf.enable_object_tracking and config.detect_objects,
        FACE_DETECTION: conf.enable_face_detection and config.detect_faces,
        PERSON_DETECTION: conf.enable_person_detection and config.detect_persons,
        SPEECH_TRANSCRIPTION: conf.enable_speech_transcription and config.detect_speech,
    }
    return [step for step in DETECTION_STEPS if wanted[step]]


def build_flow(task_id: str, workspace_id: str, payload: DetectLabelsPayload, conf: Settings = settings) -> FlowDefinition:
    base = {"task_id": task_id, "workspace_id": workspace_id}
    features = enabled_features(payload.config, conf)

    children = [
        ChildJobDefinition(
            name=UPLOAD,
            data={
                **base,
                "step_type": UPLOAD,
                "input": {"media_id": payload.media_id, "file_ref": payload.file_ref},
            },
            opts=get_step_job_options(UPLOAD),
            stage=0,
        )
    ]
    for step_type in features:
        step_input = {
            "feature": step_type.split(":", 1)[1],
            "media_id": payload.media_id,
            "task_ref": task_id,
            "version": VERSION,
        }
        if step_type == LABEL_DETECTION and payload.config.confidence_threshold is not None:
            step_input["confidence_threshold"] = payload.config.confidence_threshold
        children.append(
            ChildJobDefinition(
                name=step_type,
                data={**base, "step_type": step_type, "input": step_input},
                opts=get_step_job_options(step_type),
                stage=1,
            )
        )

    return FlowDefinition(
        task_type=TASK_TYPE,
        queue_name=QUEUE_NAME,
        data=ParentJobData(
            **base,
            enabled_steps=features,
            scheduled_steps=[c.name for c in children],
            media_id=payload.media_id,
        ),
        children=children,
    )


def build_registry(client: MediaServiceClient) -> StepRegistry:
    registry = StepRegistry()
    # upload failures propagate so the queue retries them
    registry.register(UPLOAD, RemoteStepProcessor("upload_for_detection", client))
    registry.register(
        LABEL_DETECTION,
        RemoteStepProcessor("label_detection", client, normalize=dedupe_label_entities),
        allow_independent_failure=True,
    )
    for step_type in (OBJECT_TRACKING, FACE_DETECTION, PERSON_DETECTION, SPEECH_TRANSCRIPTION):
        registry.register(
            step_type,
            RemoteStepProcessor(step_type.split(":", 1)[1], client),
            allow_independent_failure=True,
        )
    return registry
