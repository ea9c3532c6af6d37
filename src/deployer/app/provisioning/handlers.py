"""Sub-stage handlers for the provision-host task.

Each handler is a straight-line coroutine: fetch the documents it needs,
issue its remote call, and return the next self-patch as a StageResult.
Errors raised out of a handler are turned into a FAILED patch by the
dispatcher; polling handlers catch their own errors and consult the
retry policy instead.

  PROVISION_NETWORK      -> network.NetworkProvisioner
  INSTALL_AGENT          -> run install script, exit code 0 advances
  WAIT_FOR_INSTALLATION  -> poll agent status (maximumPollCount)
  PROVISION_AGENT        -> agent provision RPC, no retry
  WAIT_FOR_PROVISION     -> poll agent status (maximumPollCount)
  UPDATE_HOST_STATE      -> host.state = READY
  WAIT_FOR_HOST_UPDATES  -> poll host.esxVersion (host_update_retry_count)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from ..protocols import (
    AgentControlFactory,
    CloudStore,
    NetworkControllerFactory,
    ScriptRunner,
)
from ..settings import DeployerSettings
from .agent import (
    build_provision_request,
    check_agent_status_response,
    check_provision_response,
)
from .errors import AgentProvisionError, ScriptExecutionError
from .network import NetworkProvisioner, Sleep
from .patches import StageResult, build_patch, progress_patch
from .records import DeploymentRecord, HostRecord, HostState
from .retry import retry_or_fail
from .task_state import ProvisionHostTask, SubStage, TaskStage

logger = logging.getLogger(__name__)

Handler = Callable[[ProvisionHostTask], Awaitable[StageResult]]


class ProvisionHostHandlers:
    """Maps each sub-stage to the coroutine that processes it."""

    def __init__(
        self,
        *,
        cloud_store: CloudStore,
        network_factory: NetworkControllerFactory,
        agent_factory: AgentControlFactory,
        script_runner: ScriptRunner,
        settings: DeployerSettings,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cloud_store = cloud_store
        self._agent_factory = agent_factory
        self._script_runner = script_runner
        self._settings = settings
        self._network = NetworkProvisioner(
            cloud_store=cloud_store,
            network_factory=network_factory,
            settings=settings,
            sleep=sleep,
        )
        self._handlers: dict[SubStage, Handler] = {
            SubStage.PROVISION_NETWORK: self._network.provision,
            SubStage.INSTALL_AGENT: self.install_agent,
            SubStage.WAIT_FOR_INSTALLATION: self.wait_for_installation,
            SubStage.PROVISION_AGENT: self.provision_agent,
            SubStage.WAIT_FOR_PROVISION: self.wait_for_provision,
            SubStage.UPDATE_HOST_STATE: self.update_host_state,
            SubStage.WAIT_FOR_HOST_UPDATES: self.wait_for_host_updates,
        }

    async def handle(self, task: ProvisionHostTask) -> StageResult:
        if task.stage != TaskStage.STARTED or task.sub_stage is None:
            raise RuntimeError(
                f'cannot process task {task.task_id} in stage '
                f'{task.stage.value} (sub-stage {task.sub_stage})'
            )
        handler = self._handlers.get(task.sub_stage)
        if handler is None:
            raise RuntimeError(f'Unknown task sub-stage: {task.sub_stage}')
        return await handler(task)

    # ── INSTALL_AGENT ────────────────────────────────────────────────

    async def install_agent(self, task: ProvisionHostTask) -> StageResult:
        host, deployment = await self._fetch_host_and_deployment(task)

        script_name = self._settings.install_script_name
        command = [
            f'./{script_name}',
            host.address,
            host.user,
            host.password,
            task.vib_path,
        ]
        if deployment.syslog_endpoint is not None:
            command.extend(['-l', deployment.syslog_endpoint])

        log_dir = self._settings.script_log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f'{script_name}-{host.address}-{task.task_id}.log'

        logger.info(
            'Installing agent: host=%s vib=%s log=%s',
            host.address,
            task.vib_path,
            log_file,
            extra={'task_id': task.task_id, 'host_address': host.address},
        )
        exit_code = await self._script_runner.run(
            command,
            cwd=self._settings.script_directory,
            timeout_seconds=self._settings.script_timeout_seconds,
            output_path=log_file,
        )
        if exit_code != 0:
            self._log_script_output(script_name, exit_code, log_file)
            raise ScriptExecutionError(host.address, exit_code)

        return StageResult(
            patch=progress_patch(
                task, TaskStage.STARTED, SubStage.WAIT_FOR_INSTALLATION,
            ),
        )

    @staticmethod
    def _log_script_output(
        script_name: str, exit_code: int | None, log_file: Path,
    ) -> None:
        logger.error('%s returned %s', script_name, exit_code)
        try:
            output = log_file.read_text(errors='replace')
        except OSError as exc:
            logger.error('Failed to read script output %s: %s', log_file, exc)
            return
        logger.error('Script output: %s', output)

    # ── WAIT_FOR_INSTALLATION / WAIT_FOR_PROVISION ───────────────────

    async def wait_for_installation(self, task: ProvisionHostTask) -> StageResult:
        return await self._wait_for_agent(
            task,
            next_sub_stage=SubStage.PROVISION_AGENT,
            phase='installation',
        )

    async def wait_for_provision(self, task: ProvisionHostTask) -> StageResult:
        return await self._wait_for_agent(
            task,
            next_sub_stage=SubStage.UPDATE_HOST_STATE,
            phase='provisioning',
        )

    async def _wait_for_agent(
        self,
        task: ProvisionHostTask,
        *,
        next_sub_stage: SubStage,
        phase: str,
    ) -> StageResult:
        host_label = task.host_ref
        try:
            host = HostRecord.from_document(
                await self._cloud_store.get(task.host_ref)
            )
            host_label = host.address
            client = self._agent_factory.create()
            client.set_endpoint(host.address, host.agent_port)
            response = await client.get_agent_status()
            check_agent_status_response(response, host.address)
        except Exception as exc:
            return retry_or_fail(
                task,
                limit=task.maximum_poll_count,
                message=(
                    f'The agent on host {host_label} failed to become ready '
                    f'after {phase} after {task.maximum_poll_count} retries'
                ),
                cause=exc,
            )
        return StageResult(
            patch=progress_patch(task, TaskStage.STARTED, next_sub_stage),
        )

    # ── PROVISION_AGENT ──────────────────────────────────────────────

    async def provision_agent(self, task: ProvisionHostTask) -> StageResult:
        host, deployment = await self._fetch_host_and_deployment(task)
        request = build_provision_request(
            host=host,
            deployment=deployment,
            host_ref=task.host_ref,
            deployment_ref=task.deployment_ref,
        )
        try:
            client = self._agent_factory.create()
            client.set_endpoint(host.address, host.agent_port)
            response = await client.provision(request)
            check_provision_response(response)
        except Exception as exc:
            raise AgentProvisionError(host.address, exc) from exc

        logger.info(
            'Agent provisioned: host=%s management_only=%s',
            host.address,
            request.management_only,
            extra={'task_id': task.task_id, 'host_address': host.address},
        )
        return StageResult(
            patch=progress_patch(
                task, TaskStage.STARTED, SubStage.WAIT_FOR_PROVISION,
            ),
        )

    # ── UPDATE_HOST_STATE ────────────────────────────────────────────

    async def update_host_state(self, task: ProvisionHostTask) -> StageResult:
        await self._cloud_store.patch(
            task.host_ref, {'state': HostState.READY.value},
        )
        return StageResult(
            patch=progress_patch(
                task,
                TaskStage.STARTED,
                SubStage.WAIT_FOR_HOST_UPDATES,
                poll_count=0,
            ),
        )

    # ── WAIT_FOR_HOST_UPDATES ────────────────────────────────────────

    async def wait_for_host_updates(self, task: ProvisionHostTask) -> StageResult:
        limit = self._settings.host_update_retry_count
        message = (
            f'The host {task.host_ref} failed to get updated with '
            f'configuration details after {limit} retries'
        )
        try:
            host = HostRecord.from_document(
                await self._cloud_store.get(task.host_ref)
            )
        except Exception as exc:
            return retry_or_fail(task, limit=limit, message=message, cause=exc)

        if host.esx_version is None:
            return retry_or_fail(task, limit=limit, message=message)
        return StageResult(patch=build_patch(TaskStage.FINISHED))

    # ── Helpers ──────────────────────────────────────────────────────

    async def _fetch_host_and_deployment(
        self, task: ProvisionHostTask,
    ) -> tuple[HostRecord, DeploymentRecord]:
        """Fetch both documents in parallel; all fetch errors are raised together."""
        results = await asyncio.gather(
            self._cloud_store.get(task.host_ref),
            self._cloud_store.get(task.deployment_ref),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if not isinstance(error, Exception):
                raise error
        if errors:
            raise ExceptionGroup('failed to fetch host and deployment', errors)
        host_doc, deployment_doc = results
        return (
            HostRecord.from_document(host_doc),
            DeploymentRecord.from_document(deployment_doc),
        )
