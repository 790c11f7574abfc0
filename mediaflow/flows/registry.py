from dataclasses import dataclass
from types import ModuleType
from typing import Any, Callable, Dict, Type

from pydantic import BaseModel

from ..flow.orchestrator import FlowOrchestrator
from ..flow.policy import PartialSuccessPolicy
from ..flow.reporter import TaskStatusReporter
from ..flow.steps import StepRegistry
from ..queue.jobs import JobQueue, RedisJobQueue
from ..queue.producer import FlowDefinition
from ..services.media import MediaServiceClient
from ..storage.repo import Repo
from . import labels, render, transcode


@dataclass(frozen=True)
class FlowSpec:
    task_type: str
    queue_name: str
    payload_model: Type[BaseModel]
    build_flow: Callable[..., FlowDefinition]
    build_registry: Callable[[MediaServiceClient], StepRegistry]
    policy: PartialSuccessPolicy

    def flow_for(self, task_id: str, workspace_id: str, payload: Dict[str, Any]) -> FlowDefinition:
        return self.build_flow(task_id, workspace_id, self.payload_model.model_validate(payload))


def _spec(module: ModuleType, payload_model: Type[BaseModel]) -> FlowSpec:
    return FlowSpec(
        task_type=module.TASK_TYPE,
        queue_name=module.QUEUE_NAME,
        payload_model=payload_model,
        build_flow=module.build_flow,
        build_registry=module.build_registry,
        policy=module.policy,
    )


FLOWS: Dict[str, FlowSpec] = {
    labels.TASK_TYPE: _spec(labels, labels.DetectLabelsPayload),
    transcode.TASK_TYPE: _spec(transcode, transcode.ProcessUploadPayload),
    render.TASK_TYPE: _spec(render, render.RenderTimelinePayload),
}


def get_flow(task_type: str) -> FlowSpec:
    try:
        return FLOWS[task_type]
    except KeyError:
        raise ValueError(f"Unknown task type: {task_type}") from None


def build_orchestrator(
    task_type: str,
    repo: Repo | None = None,
    queue: JobQueue | None = None,
    client: MediaServiceClient | None = None,
) -> FlowOrchestrator:
    spec = get_flow(task_type)
    return FlowOrchestrator(
        name=spec.task_type,
        registry=spec.build_registry(client or MediaServiceClient()),
        policy=spec.policy,
        reporter=TaskStatusReporter(repo or Repo()),
        queue=queue or RedisJobQueue(spec.queue_name),
    )
