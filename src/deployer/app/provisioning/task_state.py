"""Persisted document for one provision-host task.

The serialized document is the authoritative checkpoint: after a restart
the dispatcher reloads it and resumes at ``taskState.subStage`` with the
persisted ``pollCount``.

Stages:
  CREATED -> STARTED -> FINISHED | FAILED | CANCELLED

Sub-stages (only while STARTED, monotone in declaration order):
  PROVISION_NETWORK -> INSTALL_AGENT -> WAIT_FOR_INSTALLATION
  -> PROVISION_AGENT -> WAIT_FOR_PROVISION -> UPDATE_HOST_STATE
  -> WAIT_FOR_HOST_UPDATES
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_MAXIMUM_POLL_COUNT = 60
DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_EXPIRATION = timedelta(days=1)


class TaskStage(str, enum.Enum):
    CREATED = 'CREATED'
    STARTED = 'STARTED'
    FINISHED = 'FINISHED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'

    @property
    def ordinal(self) -> int:
        return _STAGE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


class SubStage(str, enum.Enum):
    PROVISION_NETWORK = 'PROVISION_NETWORK'
    INSTALL_AGENT = 'INSTALL_AGENT'
    WAIT_FOR_INSTALLATION = 'WAIT_FOR_INSTALLATION'
    PROVISION_AGENT = 'PROVISION_AGENT'
    WAIT_FOR_PROVISION = 'WAIT_FOR_PROVISION'
    UPDATE_HOST_STATE = 'UPDATE_HOST_STATE'
    WAIT_FOR_HOST_UPDATES = 'WAIT_FOR_HOST_UPDATES'

    @property
    def ordinal(self) -> int:
        return _SUB_STAGE_ORDER.index(self)


_STAGE_ORDER = tuple(TaskStage)
_SUB_STAGE_ORDER = tuple(SubStage)

TERMINAL_STAGES = frozenset(
    {TaskStage.FINISHED, TaskStage.FAILED, TaskStage.CANCELLED}
)

POLLING_SUB_STAGES = frozenset(
    {
        SubStage.WAIT_FOR_INSTALLATION,
        SubStage.WAIT_FOR_PROVISION,
        SubStage.WAIT_FOR_HOST_UPDATES,
    }
)


class ControlFlags(enum.IntFlag):
    """Bit field carried in ``controlFlags``."""

    NONE = 0
    DISABLE_PROCESSING = 1
    DISABLE_ON_TRANSITION = 2


def is_processing_disabled(flags: int | None) -> bool:
    return bool((flags or 0) & ControlFlags.DISABLE_PROCESSING)


def disable_processing_on_transition(flags: int | None) -> bool:
    return bool((flags or 0) & ControlFlags.DISABLE_ON_TRANSITION)


@dataclass(frozen=True, slots=True)
class TaskFailure:
    """Serializable representation of the error that failed a task."""

    message: str
    stack_trace: str | None = None
    error_kind: str | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {'message': self.message}
        if self.stack_trace is not None:
            doc['stackTrace'] = self.stack_trace
        if self.error_kind is not None:
            doc['errorKind'] = self.error_kind
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> TaskFailure:
        return cls(
            message=doc.get('message', ''),
            stack_trace=doc.get('stackTrace'),
            error_kind=doc.get('errorKind'),
        )


@dataclass(frozen=True, slots=True)
class TaskState:
    stage: TaskStage = TaskStage.CREATED
    sub_stage: SubStage | None = None
    failure: TaskFailure | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            'stage': self.stage.value,
            'subStage': self.sub_stage.value if self.sub_stage else None,
        }
        if self.failure is not None:
            doc['failure'] = self.failure.to_document()
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> TaskState:
        sub_stage = doc.get('subStage')
        failure = doc.get('failure')
        return cls(
            stage=TaskStage(doc.get('stage') or TaskStage.CREATED.value),
            sub_stage=SubStage(sub_stage) if sub_stage else None,
            failure=TaskFailure.from_document(failure) if failure else None,
        )


@dataclass(frozen=True, slots=True)
class ProvisionHostTask:
    """Document state of one provision-host task."""

    task_id: str
    host_ref: str
    deployment_ref: str
    vib_path: str
    task_state: TaskState = TaskState()
    control_flags: int = 0
    maximum_poll_count: int = DEFAULT_MAXIMUM_POLL_COUNT
    poll_interval: int = DEFAULT_POLL_INTERVAL_MS
    """Milliseconds between polling iterations."""
    poll_count: int = 0
    expiration_time: datetime | None = None
    document_version: int = 0

    @property
    def stage(self) -> TaskStage:
        return self.task_state.stage

    @property
    def sub_stage(self) -> SubStage | None:
        return self.task_state.sub_stage

    @property
    def processing_disabled(self) -> bool:
        return is_processing_disabled(self.control_flags)

    def to_document(self) -> dict[str, Any]:
        return {
            'documentSelfLink': self.task_id,
            'documentVersion': self.document_version,
            'taskState': self.task_state.to_document(),
            'controlFlags': self.control_flags,
            'hostServiceLink': self.host_ref,
            'deploymentServiceLink': self.deployment_ref,
            'vibPath': self.vib_path,
            'maximumPollCount': self.maximum_poll_count,
            'pollInterval': self.poll_interval,
            'pollCount': self.poll_count,
            'expirationTime': (
                self.expiration_time.isoformat()
                if self.expiration_time else None
            ),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> ProvisionHostTask:
        expiration = doc.get('expirationTime')
        return cls(
            task_id=doc['documentSelfLink'],
            host_ref=doc.get('hostServiceLink', ''),
            deployment_ref=doc.get('deploymentServiceLink', ''),
            vib_path=doc.get('vibPath', ''),
            task_state=TaskState.from_document(doc.get('taskState') or {}),
            control_flags=_int_or(doc.get('controlFlags'), 0),
            maximum_poll_count=_int_or(
                doc.get('maximumPollCount'), DEFAULT_MAXIMUM_POLL_COUNT,
            ),
            poll_interval=_int_or(
                doc.get('pollInterval'), DEFAULT_POLL_INTERVAL_MS,
            ),
            poll_count=_int_or(doc.get('pollCount'), 0),
            expiration_time=(
                datetime.fromisoformat(expiration) if expiration else None
            ),
            document_version=_int_or(doc.get('documentVersion'), 0),
        )


@dataclass(frozen=True, slots=True)
class TaskPatch:
    """Sparse patch; ``None`` means "leave unchanged"."""

    task_state: TaskState | None = None
    control_flags: int | None = None
    poll_count: int | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {}
        if self.task_state is not None:
            doc['taskState'] = self.task_state.to_document()
        if self.control_flags is not None:
            doc['controlFlags'] = self.control_flags
        if self.poll_count is not None:
            doc['pollCount'] = self.poll_count
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> TaskPatch:
        task_state = doc.get('taskState')
        return cls(
            task_state=(
                TaskState.from_document(task_state)
                if task_state is not None else None
            ),
            control_flags=doc.get('controlFlags'),
            poll_count=doc.get('pollCount'),
        )


def new_task(
    *,
    host_ref: str,
    deployment_ref: str,
    vib_path: str,
    task_id: str | None = None,
    **overrides: Any,
) -> ProvisionHostTask:
    """Build a CREATED task with defaults for every optional field."""
    task = ProvisionHostTask(
        task_id=task_id or uuid.uuid4().hex,
        host_ref=host_ref,
        deployment_ref=deployment_ref,
        vib_path=vib_path,
    )
    return replace(task, **overrides) if overrides else task


def default_expiration(
    now: datetime | None = None,
    horizon: timedelta = DEFAULT_EXPIRATION,
) -> datetime:
    return (now or datetime.now(timezone.utc)) + horizon


def _int_or(value: Any, default: int) -> int:
    return default if value is None else int(value)
