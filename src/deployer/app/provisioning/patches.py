"""Patch builder and failure reporter for provision-host tasks."""

from __future__ import annotations

import logging
import traceback
from collections.abc import Iterable
from dataclasses import dataclass

from .task_state import (
    ControlFlags,
    ProvisionHostTask,
    SubStage,
    TaskFailure,
    TaskPatch,
    TaskStage,
    TaskState,
    disable_processing_on_transition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StageResult:
    """Next self-patch produced by a sub-stage handler.

    ``delay_ms`` > 0 schedules the patch on a timer instead of sending it
    immediately (polling retries).
    """

    patch: TaskPatch
    delay_ms: int = 0


def build_patch(
    stage: TaskStage,
    sub_stage: SubStage | None = None,
    failure: TaskFailure | None = None,
) -> TaskPatch:
    return TaskPatch(
        task_state=TaskState(stage=stage, sub_stage=sub_stage, failure=failure),
    )


def progress_patch(
    current: ProvisionHostTask,
    stage: TaskStage,
    sub_stage: SubStage | None = None,
    *,
    poll_count: int | None = None,
) -> TaskPatch:
    """Stage-transition patch honouring ``DISABLE_ON_TRANSITION``."""
    patch = build_patch(stage, sub_stage)
    control_flags = None
    if disable_processing_on_transition(current.control_flags):
        control_flags = int(ControlFlags.DISABLE_PROCESSING)
    return TaskPatch(
        task_state=patch.task_state,
        control_flags=control_flags,
        poll_count=poll_count,
    )


def leaf_errors(error: BaseException | Iterable[BaseException]) -> list[BaseException]:
    """Flatten exception groups and sequences into leaf exceptions, in order."""
    if isinstance(error, BaseExceptionGroup):
        leaves: list[BaseException] = []
        for inner in error.exceptions:
            leaves.extend(leaf_errors(inner))
        return leaves
    if isinstance(error, BaseException):
        return [error]
    leaves = []
    for inner in error:
        leaves.extend(leaf_errors(inner))
    return leaves


def to_failure(error: BaseException) -> TaskFailure:
    return TaskFailure(
        message=str(error) or type(error).__name__,
        stack_trace=''.join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ),
        error_kind=type(error).__name__,
    )


def failure_patch(
    error: BaseException | Iterable[BaseException],
    *,
    poll_count: int | None = None,
) -> TaskPatch:
    """Translate one or many errors into a single FAILED patch.

    Every leaf error is logged; the first one is recorded as the cause.
    """
    leaves = leaf_errors(error)
    if not leaves:
        leaves = [RuntimeError('task failed without a recorded cause')]
    for leaf in leaves:
        logger.error(
            'Provision host task failure: %s',
            leaf,
            exc_info=(type(leaf), leaf, leaf.__traceback__),
        )
    patch = build_patch(TaskStage.FAILED, failure=to_failure(leaves[0]))
    return TaskPatch(task_state=patch.task_state, poll_count=poll_count)
