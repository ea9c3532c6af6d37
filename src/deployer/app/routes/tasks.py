"""Provision-host task document API.

Exposes the task document to callers (the deployment workflow, operators):
  POST  /api/v1/provision-host-tasks                     -> create and start
  GET   /api/v1/provision-host-tasks/{task_id}           -> current document
  PATCH /api/v1/provision-host-tasks/{task_id}           -> external patch
  GET   /api/v1/provision-host-tasks/{task_id}/history   -> accepted patches

Cancellation is an external PATCH to ``stage=CANCELLED``. Illegal
progressions are rejected with 400 and leave the document unchanged.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from deployer.app.provisioning.dispatcher import ProvisionHostTaskService
from deployer.app.provisioning.errors import TaskNotFoundError
from deployer.app.provisioning.state_machine import TaskValidationError
from deployer.app.provisioning.task_state import (
    SubStage,
    TaskPatch,
    TaskStage,
    TaskState,
    new_task,
)

TASKS_PREFIX = '/api/v1/provision-host-tasks'


# ── Request schemas ───────────────────────────────────────────────────


class CreateTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    host_ref: str = Field(alias='hostServiceLink', min_length=1)
    deployment_ref: str = Field(alias='deploymentServiceLink', min_length=1)
    vib_path: str = Field(alias='vibPath', min_length=1)
    task_id: str | None = Field(default=None, alias='documentSelfLink')
    maximum_poll_count: int | None = Field(
        default=None, alias='maximumPollCount', gt=0,
    )
    poll_interval: int | None = Field(default=None, alias='pollInterval', gt=0)
    control_flags: int | None = Field(default=None, alias='controlFlags', ge=0)


class TaskStateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    stage: TaskStage
    sub_stage: SubStage | None = Field(default=None, alias='subStage')


class PatchTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    task_state: TaskStateBody = Field(alias='taskState')
    control_flags: int | None = Field(default=None, alias='controlFlags', ge=0)
    poll_count: int | None = Field(default=None, alias='pollCount', ge=0)

    def to_patch(self) -> TaskPatch:
        return TaskPatch(
            task_state=TaskState(
                stage=self.task_state.stage,
                sub_stage=self.task_state.sub_stage,
            ),
            control_flags=self.control_flags,
            poll_count=self.poll_count,
        )


# ── Response helpers ──────────────────────────────────────────────────


def _invalid(exc: TaskValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={'error': 'invalid_task', 'detail': str(exc)},
    )


def _not_found(exc: TaskNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={'error': 'task_not_found', 'detail': str(exc)},
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_tasks_router(service: ProvisionHostTaskService) -> APIRouter:
    """Create the provision-host task router bound to ``service``."""
    router = APIRouter(prefix=TASKS_PREFIX, tags=['provision-host-tasks'])

    @router.post('', status_code=201)
    async def create_task(body: CreateTaskRequest):
        overrides = body.model_dump(
            exclude_none=True,
            exclude={'host_ref', 'deployment_ref', 'vib_path', 'task_id'},
        )
        task = new_task(
            host_ref=body.host_ref,
            deployment_ref=body.deployment_ref,
            vib_path=body.vib_path,
            task_id=body.task_id,
            **overrides,
        )
        try:
            started = await service.start(task)
        except TaskValidationError as exc:
            return _invalid(exc)
        return started.to_document()

    @router.get('/{task_id}')
    async def get_task(task_id: str):
        try:
            task = await service.get(task_id)
        except TaskNotFoundError as exc:
            return _not_found(exc)
        return task.to_document()

    @router.patch('/{task_id}')
    async def patch_task(task_id: str, body: PatchTaskRequest):
        """Apply an external patch (cancellation, control flags)."""
        try:
            task = await service.patch(task_id, body.to_patch())
        except TaskNotFoundError as exc:
            return _not_found(exc)
        except TaskValidationError as exc:
            return _invalid(exc)
        return task.to_document()

    @router.get('/{task_id}/history')
    async def get_task_history(task_id: str):
        try:
            patches = await service.history(task_id)
        except TaskNotFoundError as exc:
            return _not_found(exc)
        return {'patches': patches}

    return router
