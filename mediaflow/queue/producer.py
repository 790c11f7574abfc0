import logging
from typing import Any, Dict, List

from celery import Celery, chain, group
from pydantic import BaseModel, Field

from ..flow.options import StepJobOptions, parent_job_options
from ..flow.types import ParentJobData
from .jobs import PARENT_JOB_NAME, Job, JobQueue

logger = logging.getLogger(__name__)

STEP_TASK = "run_step"
PARENT_TASK = "run_parent"


class ChildJobDefinition(BaseModel):
    name: str
    data: Dict[str, Any]
    opts: StepJobOptions = Field(default_factory=StepJobOptions)
    stage: int = 0  # a stage starts once every job of the previous stage is terminal


class FlowDefinition(BaseModel):
    name: str = PARENT_JOB_NAME
    task_type: str
    queue_name: str
    data: ParentJobData
    opts: StepJobOptions = Field(default_factory=parent_job_options)
    children: List[ChildJobDefinition] = Field(default_factory=list)


class FlowProducer:
    """Stores a flow's job records and enqueues it as a Celery canvas.

    Each stage becomes a group; the parent task closes the chain, so Celery
    only runs it after every child task returned.
    """

    def __init__(self, celery_app: Celery, queue: JobQueue):
        self.celery_app = celery_app
        self.queue = queue

    def build_jobs(self, flow: FlowDefinition):
        parent = Job(
            name=flow.name,
            queue=flow.queue_name,
            data=flow.data.model_dump(mode="json"),
            opts=flow.opts,
        )
        children = [
            Job(
                name=child.name,
                queue=flow.queue_name,
                data={**child.data, "parent_job_id": parent.id},
                opts=child.opts,
                parent_id=parent.id,
            )
            for child in flow.children
        ]
        parent.children_ids = [c.id for c in children]
        return parent, children

    def add_flow(self, flow: FlowDefinition) -> str:
        logger.info("Adding %s flow for task %s", flow.task_type, flow.data.task_id)
        parent, children = self.build_jobs(flow)
        self.queue.add_jobs(parent, children)

        stages: Dict[int, List[Job]] = {}
        for definition, job in zip(flow.children, children):
            stages.setdefault(definition.stage, []).append(job)

        steps = [
            group([self._signature(STEP_TASK, flow, job) for job in stages[stage]])
            for stage in sorted(stages)
        ]
        try:
            chain(*steps, self._signature(PARENT_TASK, flow, parent)).apply_async()
        except Exception:
            # nothing will ever run or expire these records
            logger.error("Failed to enqueue %s flow for task %s, removing its jobs", flow.task_type, flow.data.task_id)
            self.queue.remove_jobs(parent.id)
            raise

        logger.info("Flow added, parent job: %s (%d children)", parent.id, len(children))
        return parent.id

    def _signature(self, name: str, flow: FlowDefinition, job: Job):
        return self.celery_app.signature(
            name,
            args=(flow.task_type, job.id),
            immutable=True,
            queue=flow.queue_name,
        )
