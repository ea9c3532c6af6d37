"""Provision-host task service: validate, persist, then dispatch.

Both entry points (``start`` and ``patch``) synchronously validate, merge
and persist the task document before any handler work is scheduled, so the
stored document always reflects the intent behind every later side-effect.

Progress is driven by self-patches:
  1. A handler returns the next patch (advance, retry or fail).
  2. The patch is applied immediately, or from a ``loop.call_later`` timer
     for polling retries (no worker sleeps).
  3. Once persisted, a STARTED task with processing enabled runs the
     handler for its (possibly new) sub-stage.

A task never has more than one handler, timer or self-patch in flight. An
external patch that lands while work is pending is persisted but does not
start a second handler.

Terminal stages (FINISHED, FAILED, CANCELLED) stop dispatch. A self-patch
rejected by the validator is logged and dropped; if the task is still
STARTED (an external patch moved it ahead) its stored sub-stage is run
instead. A self-patch that cannot be persisted is re-delivered after
``pollInterval``, and the task is failed once SELF_PATCH_ATTEMPTS run out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..observability.logging import bind_task
from ..protocols import TaskRepository
from ..settings import DeployerSettings
from .errors import TaskNotFoundError
from .handlers import ProvisionHostHandlers
from .patches import StageResult, build_patch, failure_patch
from .state_machine import (
    TaskValidationError,
    apply_patch,
    validate_patch,
    validate_task,
)
from .task_state import (
    TERMINAL_STAGES,
    ProvisionHostTask,
    SubStage,
    TaskPatch,
    TaskStage,
    TaskState,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Deliveries of one self-patch before the task is failed with the store error.
SELF_PATCH_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisionHostTaskService:
    """Owns the provision-host task documents of this node.

    Args:
        task_repo: Persistence for serialized task documents.
        handlers: Sub-stage handlers invoked for STARTED tasks.
        settings: Deployer settings (expiration horizon).
        clock: UTC-aware ``now`` provider, injectable for tests.
    """

    def __init__(
        self,
        *,
        task_repo: TaskRepository,
        handlers: ProvisionHostHandlers,
        settings: DeployerSettings | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._repo = task_repo
        self._handlers = handlers
        self._settings = settings or DeployerSettings()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._latest: dict[str, ProvisionHostTask] = {}
        self._changed = asyncio.Condition()
        self._background: set[asyncio.Task[Any]] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._pending: dict[str, asyncio.Task[None] | asyncio.TimerHandle] = {}
        self._closed = False

    # ── Entry points ─────────────────────────────────────────────────

    async def start(self, task: ProvisionHostTask) -> ProvisionHostTask:
        """Persist a new task and kick off its first sub-stage.

        Raises:
            TaskValidationError: If the initial document is invalid or the
                task id is already taken.
        """
        if task.stage == TaskStage.CREATED:
            task = replace(
                task,
                task_state=TaskState(
                    stage=TaskStage.STARTED,
                    sub_stage=SubStage.PROVISION_NETWORK,
                ),
            )
        if task.expiration_time is None:
            task = replace(
                task,
                expiration_time=self._clock()
                + timedelta(seconds=self._settings.task_expiration_seconds),
            )
        validate_task(task)

        async with self._lock(task.task_id):
            if await self._repo.get(task.task_id) is not None:
                raise TaskValidationError(
                    f'task {task.task_id!r} already exists'
                )
            await self._repo.create(task.to_document())
            logger.info(
                'Provision host task started: host=%s stage=%s',
                task.host_ref,
                _stage_label(task),
                extra={'task_id': task.task_id},
            )
            if task.processing_disabled:
                logger.info(
                    'Skipping start operation processing (disabled)',
                    extra={'task_id': task.task_id},
                )
            elif task.stage == TaskStage.STARTED:
                self._send_self_patch(
                    task.task_id, build_patch(task.stage, task.sub_stage),
                )
        await self._publish(task)
        return task

    async def patch(self, task_id: str, patch: TaskPatch) -> ProvisionHostTask:
        """Validate, merge and persist an external ``patch``.

        A STARTED task with processing enabled is dispatched only when no
        handler, retry timer or self-patch is already pending for it.

        Raises:
            TaskNotFoundError: If no document exists for ``task_id``.
            TaskValidationError: If the patch is rejected.
        """
        return await self._apply(task_id, patch)

    async def _apply(
        self, task_id: str, patch: TaskPatch, *, owner: Any = None,
    ) -> ProvisionHostTask:
        async with self._lock(task_id):
            current = await self.get(task_id)
            validate_patch(current, patch)
            merged = apply_patch(current, patch)
            await self._repo.save(merged.to_document(), patch.to_document())
            if merged.processing_disabled:
                logger.info(
                    'Skipping patch operation processing (disabled)',
                    extra={'task_id': task_id},
                )
            elif merged.stage == TaskStage.STARTED:
                self._dispatch_if_idle(merged, owner=owner)
        await self._publish(merged)
        return merged

    async def get(self, task_id: str) -> ProvisionHostTask:
        document = await self._repo.get(task_id)
        if document is None:
            raise TaskNotFoundError(task_id)
        return ProvisionHostTask.from_document(document)

    async def history(self, task_id: str) -> list[dict[str, Any]]:
        await self.get(task_id)
        return await self._repo.history(task_id)

    async def wait_for_stage(
        self,
        task_id: str,
        stages: Iterable[TaskStage],
        *,
        timeout: float | None = None,
    ) -> ProvisionHostTask:
        """Wait until the task's persisted stage is one of ``stages``."""
        wanted = frozenset(stages)
        task = await self.get(task_id)
        if task.stage in wanted:
            return task

        def _reached() -> bool:
            latest = self._latest.get(task_id)
            return latest is not None and latest.stage in wanted

        async def _wait() -> ProvisionHostTask:
            async with self._changed:
                await self._changed.wait_for(_reached)
            return self._latest[task_id]

        return await asyncio.wait_for(_wait(), timeout)

    async def wait_for_terminal(
        self, task_id: str, *, timeout: float | None = None,
    ) -> ProvisionHostTask:
        return await self.wait_for_stage(
            task_id, TERMINAL_STAGES, timeout=timeout,
        )

    # ── Recovery and housekeeping ────────────────────────────────────

    async def resume_active(self) -> list[str]:
        """Re-run the current sub-stage of every persisted STARTED task.

        Used after a restart; ``pollCount`` resumes from its stored value.
        """
        resumed: list[str] = []
        for document in await self._repo.list_active():
            task = ProvisionHostTask.from_document(document)
            if task.stage != TaskStage.STARTED or task.processing_disabled:
                continue
            self._latest[task.task_id] = task
            logger.info(
                'Resuming provision host task at %s (poll_count=%d)',
                _stage_label(task),
                task.poll_count,
                extra={'task_id': task.task_id},
            )
            self._dispatch_if_idle(task)
            resumed.append(task.task_id)
        return resumed

    async def purge_expired(self, now: datetime | None = None) -> list[str]:
        """Delete terminal task documents whose ``expirationTime`` has passed."""
        now = now or self._clock()
        purged: list[str] = []
        for document in await self._repo.list_expired(now):
            task = ProvisionHostTask.from_document(document)
            if not task.stage.is_terminal:
                continue
            task_id = task.task_id
            async with self._lock(task_id):
                if await self._repo.delete(task_id):
                    purged.append(task_id)
            self._latest.pop(task_id, None)
            self._locks.pop(task_id, None)
        if purged:
            logger.info('Purged %d expired provision host tasks', len(purged))
        return purged

    async def aclose(self) -> None:
        """Cancel pending retry timers and in-flight handlers."""
        self._closed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self._pending.clear()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Dispatch ─────────────────────────────────────────────────────
    #
    # Each task owns at most one pending unit of work in ``_pending``: a
    # running handler, a retry timer, or a self-patch being applied. Each
    # step of the chain hands the slot to the next one; an external patch
    # only dispatches when the slot is empty.

    def _dispatch_if_idle(self, task: ProvisionHostTask, *, owner: Any = None) -> None:
        pending = self._pending.get(task.task_id)
        if pending is not None and pending is not owner:
            logger.info(
                'Work already pending for %s; not dispatching again',
                _stage_label(task),
                extra={'task_id': task.task_id},
            )
            return
        if self._closed:
            self._pending.pop(task.task_id, None)
            return
        self._pending[task.task_id] = self._spawn(
            self._process_started_stage(task),
        )

    async def _process_started_stage(self, task: ProvisionHostTask) -> None:
        with bind_task(task.task_id, task.sub_stage):
            try:
                try:
                    result = await self._handlers.handle(task)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    result = StageResult(patch=failure_patch(exc))

                patch_state = result.patch.task_state
                logger.info(
                    'Sending self-patch to stage %s : %s',
                    patch_state.stage.value if patch_state else None,
                    patch_state.sub_stage.value
                    if patch_state and patch_state.sub_stage else None,
                    extra={'task_id': task.task_id, 'delay_ms': result.delay_ms},
                )
                self._send_self_patch(
                    task.task_id, result.patch, delay_ms=result.delay_ms,
                )
            finally:
                self._release(task.task_id, asyncio.current_task())

    def _send_self_patch(
        self,
        task_id: str,
        patch: TaskPatch,
        *,
        delay_ms: int = 0,
        attempt: int = 1,
    ) -> None:
        if self._closed:
            return
        if delay_ms <= 0:
            self._pending[task_id] = self._spawn(
                self._apply_self_patch(task_id, patch, attempt),
            )
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._timers.discard(handle)
            if self._closed:
                self._release(task_id, handle)
                return
            self._pending[task_id] = self._spawn(
                self._apply_self_patch(task_id, patch, attempt),
            )

        handle = loop.call_later(delay_ms / 1000, _fire)
        self._timers.add(handle)
        self._pending[task_id] = handle

    async def _apply_self_patch(
        self, task_id: str, patch: TaskPatch, attempt: int = 1,
    ) -> None:
        me = asyncio.current_task()
        try:
            await self._apply(task_id, patch, owner=me)
        except TaskNotFoundError as exc:
            logger.warning(
                'Dropping self-patch: %s', exc, extra={'task_id': task_id},
            )
        except TaskValidationError as exc:
            logger.warning(
                'Dropping self-patch: %s', exc, extra={'task_id': task_id},
            )
            await self._resume_current(task_id, owner=me)
        except Exception as exc:
            self._redeliver(task_id, patch, attempt, exc)
        finally:
            self._release(task_id, me)

    def _redeliver(
        self, task_id: str, patch: TaskPatch, attempt: int, exc: Exception,
    ) -> None:
        """Retry persisting a self-patch; fail the task once attempts run out."""
        latest = self._latest.get(task_id)
        delay_ms = latest.poll_interval if latest is not None else 0
        if attempt < SELF_PATCH_ATTEMPTS:
            logger.warning(
                'Failed to apply self-patch (attempt %d/%d): %s',
                attempt,
                SELF_PATCH_ATTEMPTS,
                exc,
                extra={'task_id': task_id},
            )
            self._send_self_patch(
                task_id, patch, delay_ms=delay_ms, attempt=attempt + 1,
            )
            return
        if patch.task_state is not None and patch.task_state.stage.is_terminal:
            logger.error(
                'Giving up on self-patch after %d attempts',
                attempt,
                exc_info=exc,
                extra={'task_id': task_id},
            )
            return
        self._send_self_patch(task_id, failure_patch(exc), delay_ms=delay_ms)

    async def _resume_current(self, task_id: str, *, owner: Any) -> None:
        """Re-run the stored sub-stage after a self-patch was superseded."""
        async with self._lock(task_id):
            try:
                task = await self.get(task_id)
            except TaskNotFoundError:
                return
            if task.stage == TaskStage.STARTED and not task.processing_disabled:
                self._dispatch_if_idle(task, owner=owner)

    def _release(self, task_id: str, owner: Any) -> None:
        if self._pending.get(task_id) is owner:
            del self._pending[task_id]

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _lock(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    async def _publish(self, task: ProvisionHostTask) -> None:
        self._latest[task.task_id] = task
        async with self._changed:
            self._changed.notify_all()


def _stage_label(task: ProvisionHostTask) -> str:
    if task.sub_stage is None:
        return task.stage.value
    return f'{task.stage.value}:{task.sub_stage.value}'
