from typing import Any, Callable, Dict, Optional

import httpx

from ..config import settings
from ..flow.steps import JobContext

# Step processors delegate the media work (probing, transcoding, detection,
# rendering) to a remote media service; this module only adapts the calls.


class MediaServiceClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.media_service_url).rstrip("/")
        self.timeout = timeout or settings.media_service_timeout

    def run(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/operations/{operation}"
        with httpx.Client(timeout=self.timeout) as client:
            r = client.post(url, json=payload)
            r.raise_for_status()
            return r.json()


Normalizer = Callable[[Dict[str, Any], JobContext], Any]


class RemoteStepProcessor:
    def __init__(self, operation: str, client: MediaServiceClient, normalize: Optional[Normalizer] = None):
        self.operation = operation
        self.client = client
        self.normalize = normalize

    def process(self, input: Dict[str, Any], context: JobContext) -> Any:
        context.report_progress(0)
        response = self.client.run(
            self.operation,
            {
                "task_id": context.task_id,
                "workspace_id": context.workspace_id,
                "attempt": context.attempt,
                "input": input,
            },
        )
        context.report_progress(100)
        if self.normalize is not None:
            return self.normalize(response, context)
        return response


def dedupe_label_entities(response: Dict[str, Any], context: JobContext) -> Dict[str, Any]:
    """Collapse repeated label entities into one entry per entity id.

    Detection responses repeat the same entity across segments; the
    execution's EntityCache keeps the first description seen for each id.
    """
    labels = []
    for label in response.get("labels", []):
        entity = label.get("entity") or {}
        key = entity.get("id") or entity.get("description")
        if not key:
            continue
        seen = key in context.entities
        record = context.entities.get_or_create(
            key,
            lambda: {"entity_id": key, "description": entity.get("description", key), "segments": []},
        )
        if not seen:
            labels.append(record)
        record["segments"].extend(label.get("segments", []))
    return {
        "labels": labels,
        "entity_count": len(context.entities),
        "version": response.get("version"),
    }
