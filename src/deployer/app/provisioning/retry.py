"""Retry policy for polling sub-stages.

A polling attempt that did not succeed either re-asserts the current
sub-stage with ``pollCount + 1`` after ``pollInterval`` milliseconds, or,
once ``pollCount + 1`` reaches the limit, fails the task.
"""

from __future__ import annotations

import logging

from .errors import RetryLimitExceeded
from .patches import StageResult, build_patch, failure_patch
from .task_state import ProvisionHostTask, TaskPatch, TaskStage

logger = logging.getLogger(__name__)


def retry_or_fail(
    task: ProvisionHostTask,
    *,
    limit: int,
    message: str,
    cause: BaseException | None = None,
) -> StageResult:
    """Schedule another poll of the current sub-stage or fail the task.

    Args:
        task: Current task document (must be STARTED).
        limit: Retry budget for this sub-stage.
        message: Failure message used once the budget is exhausted.
        cause: The error that made this attempt unsuccessful, if any.
    """
    next_count = task.poll_count + 1
    if next_count >= limit:
        if cause is not None:
            logger.error(
                'Polling %s exhausted: %s',
                task.sub_stage.value if task.sub_stage else None,
                cause,
                exc_info=(type(cause), cause, cause.__traceback__),
                extra={'task_id': task.task_id},
            )
        error = RetryLimitExceeded(message, limit=limit)
        if cause is not None:
            error.__cause__ = cause
        return StageResult(patch=failure_patch(error, poll_count=next_count))

    logger.debug(
        'Polling %s again (%d/%d): %s',
        task.sub_stage.value if task.sub_stage else None,
        next_count,
        limit,
        cause,
        extra={'task_id': task.task_id},
    )
    patch = build_patch(TaskStage.STARTED, task.sub_stage)
    return StageResult(
        patch=TaskPatch(task_state=patch.task_state, poll_count=next_count),
        delay_ms=task.poll_interval,
    )
