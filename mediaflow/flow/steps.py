from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Optional, Protocol

from .errors import UnknownStepTypeError


class EntityCache:
    """Dedup cache for entities resolved during one step execution.

    Created fresh for every execution and handed to the processor through
    its JobContext; nothing outlives the call.
    """

    def __init__(self):
        self._items: Dict[Hashable, Any] = {}

    def get_or_create(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        if key not in self._items:
            self._items[key] = factory()
        return self._items[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class JobContext:
    job_id: str
    task_id: str
    workspace_id: str
    step_type: str
    attempt: int = 1
    report_progress: Callable[[float], None] = lambda progress: None
    entities: EntityCache = field(default_factory=EntityCache)


class StepProcessor(Protocol):
    def process(self, input: Dict[str, Any], context: JobContext) -> Any:
        ...


@dataclass(frozen=True)
class StepRoute:
    processor: StepProcessor
    # failures become a failed StepResult instead of a queue retry
    allow_independent_failure: bool = False


class StepRegistry:
    """Static routing table from step type to processor."""

    def __init__(self):
        self._routes: Dict[str, StepRoute] = {}

    def register(self, step_type: str, processor: StepProcessor, allow_independent_failure: bool = False) -> "StepRegistry":
        if step_type in self._routes:
            raise ValueError(f"Step type already registered: {step_type}")
        self._routes[step_type] = StepRoute(processor, allow_independent_failure)
        return self

    def route(self, step_type: Optional[str]) -> StepRoute:
        try:
            return self._routes[step_type]
        except KeyError:
            raise UnknownStepTypeError(str(step_type)) from None

    def __contains__(self, step_type: str) -> bool:
        return step_type in self._routes

    @property
    def step_types(self):
        return list(self._routes)
