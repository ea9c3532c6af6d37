"""Provision-host task validation and patch-merge contract.

Enforces the legal stage/sub-stage combinations:
  CREATED, FINISHED, FAILED, CANCELLED -> no sub-stage
  STARTED -> exactly one sub-stage

And forbids backward progression:
  stage ordinal never decreases, terminal stages are absorbing,
  sub-stage ordinal never decreases while STARTED (equal = retry).
"""

from __future__ import annotations

from dataclasses import replace

from .task_state import (
    ProvisionHostTask,
    TaskPatch,
    TaskStage,
    TaskState,
)


class TaskValidationError(ValueError):
    """Raised when a task document or patch is rejected."""


class InvalidStateTransition(TaskValidationError):
    """Raised for illegal stage or sub-stage progression."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def validate_task(task: ProvisionHostTask) -> None:
    """Validate a full task document."""
    for name in ('task_id', 'host_ref', 'deployment_ref', 'vib_path'):
        value = getattr(task, name)
        if not value or not str(value).strip():
            raise TaskValidationError(f'{name} is required')
    if task.maximum_poll_count < 1:
        raise TaskValidationError('maximum_poll_count must be positive')
    if task.poll_interval < 1:
        raise TaskValidationError('poll_interval must be positive')
    if task.poll_count < 0:
        raise TaskValidationError('poll_count must be >= 0')
    if task.control_flags < 0:
        raise TaskValidationError('control_flags must be >= 0')
    validate_task_state(task.task_state)


def validate_task_state(state: TaskState) -> None:
    if state.stage == TaskStage.STARTED:
        if state.sub_stage is None:
            raise TaskValidationError('sub_stage is required in STARTED')
    elif state.sub_stage is not None:
        raise TaskValidationError(
            f'sub_stage must be unset in {state.stage.value} '
            f'(got {state.sub_stage.value})'
        )
    if state.failure is not None and state.stage != TaskStage.FAILED:
        raise TaskValidationError(
            f'failure may only be set in FAILED (got {state.stage.value})'
        )


def validate_patch(current: ProvisionHostTask, patch: TaskPatch) -> None:
    """Validate ``patch`` against the persisted ``current`` document."""
    if patch.task_state is None:
        raise TaskValidationError('patch must carry a task state')
    validate_task_state(patch.task_state)
    if patch.poll_count is not None and patch.poll_count < 0:
        raise TaskValidationError('poll_count must be >= 0')
    if patch.control_flags is not None and patch.control_flags < 0:
        raise TaskValidationError('control_flags must be >= 0')
    validate_progression(current.task_state, patch.task_state)


def validate_progression(current: TaskState, patch: TaskState) -> None:
    if current.stage.is_terminal:
        raise InvalidStateTransition(
            _label(current), _label(patch),
        )
    if patch.stage.ordinal < current.stage.ordinal:
        raise InvalidStateTransition(_label(current), _label(patch))
    if (
        current.sub_stage is not None
        and patch.sub_stage is not None
        and patch.sub_stage.ordinal < current.sub_stage.ordinal
    ):
        raise InvalidStateTransition(_label(current), _label(patch))


def apply_patch(
    current: ProvisionHostTask,
    patch: TaskPatch,
) -> ProvisionHostTask:
    """Merge a validated sparse patch into ``current``.

    ``poll_count`` resets to 0 whenever the stage or sub-stage changes,
    unless the patch sets it explicitly.
    """
    task_state = patch.task_state or current.task_state
    poll_count = patch.poll_count
    if poll_count is None:
        advanced = (
            task_state.stage != current.stage
            or task_state.sub_stage != current.sub_stage
        )
        poll_count = 0 if advanced else current.poll_count

    merged = replace(
        current,
        task_state=task_state,
        control_flags=(
            patch.control_flags
            if patch.control_flags is not None
            else current.control_flags
        ),
        poll_count=poll_count,
        document_version=current.document_version + 1,
    )
    validate_task(merged)
    return merged


def _label(state: TaskState) -> str:
    if state.sub_stage is None:
        return state.stage.value
    return f'{state.stage.value}:{state.sub_stage.value}'
