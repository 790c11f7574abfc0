import orjson
import pytest
from fastapi.testclient import TestClient

from mediaflow.config import settings
from mediaflow.main import app
from mediaflow.queue.jobs import Job, RedisJobQueue
from mediaflow.routers import tasks
from mediaflow.storage.repo import Repo
from mediaflow.storage.schema import TaskRecord
from conftest import FakeRedis

HEADERS = {"x-api-token": settings.api_token}


class RecordingProducer:
    flows = []

    def __init__(self, celery_app, queue):
        self.queue = queue

    def add_flow(self, flow):
        self.flows.append(flow)
        return "parent-1"


@pytest.fixture
def api_repo(monkeypatch):
    repo = Repo(client=FakeRedis())
    monkeypatch.setattr(tasks, "repo", repo)
    RecordingProducer.flows = []
    monkeypatch.setattr(tasks, "FlowProducer", RecordingProducer)
    return repo


@pytest.fixture
def client(api_repo):
    return TestClient(app)


def test_requires_token(client):
    assert client.get("/status", params={"task_id": "x"}).status_code == 401


def test_new_task_queues_flow(client, api_repo):
    r = client.post(
        "/new",
        headers=HEADERS,
        json={
            "task_type": "render_timeline",
            "workspace_id": "ws-1",
            "payload": {"timeline_id": "tl-1"},
        },
    )

    assert r.status_code == 200
    taskid = r.json()["taskid"]
    rec = api_repo.get(taskid)
    assert rec.status == "queued"
    assert rec.task_type == "render_timeline"
    assert rec.parent_job_id == "parent-1"
    flow = RecordingProducer.flows[0]
    assert flow.data.task_id == taskid
    assert flow.queue_name == "render"


@pytest.mark.parametrize(
    "body",
    [
        {"task_type": "derive_clips", "workspace_id": "ws-1"},
        {"task_type": "process_upload", "workspace_id": "ws-1", "payload": {"media_id": "m"}},
    ],
)
def test_new_task_rejects_bad_requests(client, body):
    assert client.post("/new", headers=HEADERS, json=body).status_code == 422
    assert RecordingProducer.flows == []


def test_status_without_longpoll(client, api_repo):
    api_repo.save(TaskRecord(taskid="t1", task_type="detect_labels", workspace_id="ws-1", status="running"))
    api_repo.update("t1", progress=40)

    r = client.get("/status", headers=HEADERS, params={"task_id": "t1", "longpoll": "false"})

    assert r.json() == {"status": "running", "progress": 40}


def test_status_unknown_task(client):
    assert client.get("/status", headers=HEADERS, params={"task_id": "nope"}).status_code == 404


def test_result_of_successful_task(client, api_repo):
    api_repo.save(TaskRecord(taskid="t1", task_type="detect_labels", workspace_id="ws-1", status="success", progress=100))
    api_repo.update(
        "t1",
        result={
            "steps": {"labels:label_detection": {"step_type": "labels:label_detection", "status": "completed"}},
            "completed_steps": ["labels:label_detection"],
            "failed_steps": ["labels:face_detection"],
            "started_at": "2026-01-01T00:00:00.000Z",
        },
        error_log=orjson.dumps(
            [{"timestamp": "2026-01-01T00:00:01.000Z", "step": "labels:face_detection", "error": "quota exceeded"}]
        ).decode(),
    )

    body = client.get("/getresult", headers=HEADERS, params={"task_id": "t1"}).json()

    assert body["completed_steps"] == ["labels:label_detection"]
    assert body["failed_steps"] == ["labels:face_detection"]
    assert body["errors"][0]["error"] == "quota exceeded"


def test_result_of_unfinished_task(client, api_repo):
    api_repo.save(TaskRecord(taskid="t1", task_type="detect_labels", workspace_id="ws-1", status="running"))
    assert client.get("/getresult", headers=HEADERS, params={"task_id": "t1"}).status_code == 409


def test_unreachable_broker_fails_the_task(client, api_repo, monkeypatch):
    def add_flow(self, flow):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(RecordingProducer, "add_flow", add_flow)

    r = client.post(
        "/new",
        headers=HEADERS,
        json={"task_type": "render_timeline", "workspace_id": "ws-1", "payload": {"timeline_id": "tl-1"}},
    )

    assert r.status_code == 503
    [key] = [k for k in api_repo.r.hashes if k.startswith("task:")]
    rec = api_repo.get(key.split(":", 1)[1])
    assert rec.status == "failed"
    assert rec.parent_job_id is None
    [entry] = orjson.loads(rec.error_log)
    assert entry["step"] == "enqueue"
    assert entry["error"] == "broker unreachable"


def test_wrong_token_rejected(client):
    r = client.get("/status", headers={"x-api-token": "not-the-token"}, params={"task_id": "x"})
    assert r.status_code == 401


def test_metrics_per_queue(client, api_repo):
    queue = RedisJobQueue("render", client=api_repo.r)
    step = Job(name="render:prepare", queue="render")
    queue.add_jobs(Job(name="parent", queue="render"), [step])
    queue.mark_active(step.id)

    body = client.get("/metrics", headers=HEADERS).json()

    assert set(body) == {"labels", "transcode", "render"}
    assert body["render"] == {"waiting": 1, "active": 1, "completed": 0, "failed": 0, "delayed": 0}
    assert body["labels"]["waiting"] == 0


def test_health(client):
    body = client.get("/health").json()
    assert body == {"status": "ok", "task_types": ["detect_labels", "process_upload", "render_timeline"]}
