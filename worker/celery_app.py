import os
from celery import Celery

celery_app = Celery(
    "mediaflow",
    broker=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    backend=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
)
celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
)

_runners = {}


def get_runner(task_type: str):
    """One orchestrator per task type per worker process."""
    from mediaflow.flows.registry import build_orchestrator
    from mediaflow.queue.runner import FlowRunner

    if task_type not in _runners:
        orchestrator = build_orchestrator(task_type)
        _runners[task_type] = FlowRunner(orchestrator, orchestrator.queue)
    return _runners[task_type]


@celery_app.task(name="run_step", bind=True)
def run_step(self, task_type: str, job_id: str):
    return get_runner(task_type).run(self, job_id)


@celery_app.task(name="run_parent", bind=True)
def run_parent(self, task_type: str, job_id: str):
    return get_runner(task_type).run(self, job_id)
