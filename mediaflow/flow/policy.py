import logging
from typing import Callable, Iterable, List, Mapping

from pydantic import BaseModel

from .types import StepResult, StepStatus

logger = logging.getLogger(__name__)


class PolicyDecision(BaseModel):
    accept: bool
    successful: List[str]
    failed: List[str]
    reason: str = ""


PartialSuccessPolicy = Callable[[Iterable[str], Mapping[str, StepResult]], PolicyDecision]


def _partition(enabled_steps: Iterable[str], results: Mapping[str, StepResult]):
    successful: List[str] = []
    failed: List[str] = []
    for step_type in enabled_steps:
        result = results.get(step_type)
        if result is not None and result.status == StepStatus.COMPLETED:
            successful.append(step_type)
            continue
        # an enabled step with no result was never scheduled or died silently
        if result is None:
            logger.warning("Step %s is enabled but has no result - marking as failed", step_type)
        failed.append(step_type)
    return successful, failed


def at_least_one_succeeded(enabled_steps: Iterable[str], results: Mapping[str, StepResult]) -> PolicyDecision:
    """Accept unless every enabled step failed.

    Used by flows whose steps are independent producers, where one failing
    step should not discard data already written by the others.
    """
    successful, failed = _partition(enabled_steps, results)
    accept = len(successful) > 0
    return PolicyDecision(
        accept=accept,
        successful=successful,
        failed=failed,
        reason="" if accept else "all enabled steps failed",
    )


def all_succeeded(enabled_steps: Iterable[str], results: Mapping[str, StepResult]) -> PolicyDecision:
    successful, failed = _partition(enabled_steps, results)
    accept = not failed
    return PolicyDecision(
        accept=accept,
        successful=successful,
        failed=failed,
        reason="" if accept else "required steps failed",
    )
