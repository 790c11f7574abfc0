import asyncio
import logging
import time
import uuid
from typing import Dict
from fastapi import APIRouter, Depends, HTTPException, Query
import orjson
from ..auth import require_token
from ..models import NewTaskRequest, TaskResponse, StatusResponse, ResultResponse, QueueMetrics
from ..storage.repo import Repo
from ..storage.schema import TaskRecord
from ..config import settings
from ..flow.aggregator import append_error_entries, create_error_log_entry
from ..flow.reporter import TaskStatusReporter
from ..flow.types import TaskStatus
from ..flows.registry import FLOWS, get_flow
from ..queue.jobs import RedisJobQueue
from ..queue.producer import FlowProducer
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)

router = APIRouter()
repo = Repo()

ACTIVE_STATUSES = {"queued", "running"}

@router.post("/new", response_model=TaskResponse)
async def new_task(payload: NewTaskRequest, _=Depends(require_token)):
    try:
        spec = get_flow(payload.task_type)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    taskid = str(uuid.uuid4())
    try:
        flow = spec.flow_for(taskid, payload.workspace_id, payload.payload)
    except ValueError as exc:  # pydantic.ValidationError included
        raise HTTPException(status_code=422, detail=str(exc))

    repo.save(TaskRecord(taskid=taskid, task_type=spec.task_type,
                         workspace_id=payload.workspace_id, status="queued"))
    producer = FlowProducer(celery_app, RedisJobQueue(spec.queue_name, client=repo.r))
    try:
        parent_job_id = producer.add_flow(flow)
    except Exception as exc:
        logger.exception("Failed to queue %s task %s", spec.task_type, taskid)
        error_log = append_error_entries({}, [create_error_log_entry("enqueue", exc)])
        TaskStatusReporter(repo).update_task(taskid, status=TaskStatus.FAILED, error_log=error_log)
        raise HTTPException(status_code=503, detail="Task queue unavailable")
    repo.update(taskid, parent_job_id=parent_job_id)
    logger.info("Queued %s task %s as parent job %s", spec.task_type, taskid, parent_job_id)
    return TaskResponse(taskid=taskid)

@router.get("/status", response_model=StatusResponse)
async def get_status(task_id: str = Query(..., alias="task_id"), longpoll: bool = True, _=Depends(require_token)):
    rec = repo.get(task_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Unknown task")

    deadline = time.time() + settings.max_status_longpoll_seconds
    while longpoll and rec.status in ACTIVE_STATUSES and time.time() < deadline:
        await asyncio.sleep(1.0)
        rec = repo.get(task_id)

    return StatusResponse(status=rec.status, progress=rec.progress)

@router.get("/getresult", response_model=ResultResponse)
async def get_result(task_id: str = Query(..., alias="task_id"), _=Depends(require_token)):
    rec = repo.get(task_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Unknown task")
    if rec.status != "success" or not rec.result_json:
        raise HTTPException(status_code=409, detail=f"Task status is {rec.status}")
    result = orjson.loads(rec.result_json)
    errors = orjson.loads(rec.error_log) if rec.error_log else []
    return ResultResponse(status=rec.status,
                          steps=result.get("steps", {}),
                          completed_steps=result.get("completed_steps", []),
                          failed_steps=result.get("failed_steps", []),
                          started_at=result.get("started_at"),
                          completed_at=result.get("completed_at"),
                          errors=errors)

@router.get("/metrics", response_model=Dict[str, QueueMetrics])
async def get_metrics(_=Depends(require_token)):
    return {spec.queue_name: QueueMetrics(**RedisJobQueue(spec.queue_name, client=repo.r).get_counts())
            for spec in FLOWS.values()}
