"""Shared fixtures for provision-host task tests.

``make_harness`` wires the task service to in-memory collaborators, with a
host and a deployment document already present in the cloud store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

import pytest

from deployer.app.inmemory import (
    InMemoryAgentControlFactory,
    InMemoryCloudStore,
    InMemoryNetworkControllerFactory,
    InMemoryScriptRunner,
    InMemoryTaskRepository,
)
from deployer.app.provisioning.dispatcher import ProvisionHostTaskService
from deployer.app.provisioning.handlers import ProvisionHostHandlers
from deployer.app.provisioning.task_state import (
    ProvisionHostTask,
    TaskPatch,
    new_task,
)
from deployer.app.settings import DeployerSettings

HOST_REF = '/cloudstore/hosts/host-1'
DEPLOYMENT_REF = '/cloudstore/deployments/dep-1'
HOST_ADDRESS = '10.0.0.5'
VIB_PATH = '/vibs/esxcloud-agent.vib'


def host_document(**overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        'hostAddress': HOST_ADDRESS,
        'userName': 'root',
        'password': 'host-secret',
        'agentPort': 8835,
        'state': 'CREATING',
        'usageTags': ['CLOUD'],
        'metadata': {},
        'esxVersion': None,
        'nsxFabricNodeId': None,
        'nsxTransportNodeId': None,
    }
    doc.update(overrides)
    return doc


def deployment_document(**overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        'virtualNetworkEnabled': False,
        'networkManagerAddress': '10.0.0.100',
        'networkManagerUsername': 'admin',
        'networkManagerPassword': 'nsx-secret',
        'networkZoneId': 'TZ-1',
        'imageDataStoreNames': ['image-ds'],
        'imageDataStoreUsedForVMs': True,
        'syslogEndpoint': None,
        'ntpEndpoint': 'ntp.local',
        'statsEnabled': False,
    }
    doc.update(overrides)
    return doc


def _populate_esx_version_once_ready(doc: dict[str, Any]) -> None:
    if doc.get('state') == 'READY' and not doc.get('esxVersion'):
        doc['esxVersion'] = '6.7.0'


async def no_sleep(_seconds: float) -> None:
    return None


async def wait_until(
    predicate: Callable[[], Any], *, timeout: float = 5.0,
) -> None:
    """Poll an async or sync predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError('condition not reached before timeout')
        await asyncio.sleep(0.005)


@dataclass
class Harness:
    cloud_store: InMemoryCloudStore
    network_factory: InMemoryNetworkControllerFactory
    agent_factory: InMemoryAgentControlFactory
    script_runner: InMemoryScriptRunner
    task_repo: InMemoryTaskRepository
    settings: DeployerSettings
    handlers: ProvisionHostHandlers
    service: ProvisionHostTaskService

    @property
    def network(self):
        return self.network_factory.controller

    def task(self, **overrides: Any) -> ProvisionHostTask:
        overrides.setdefault('poll_interval', 10)
        overrides.setdefault('host_ref', HOST_REF)
        overrides.setdefault('deployment_ref', DEPLOYMENT_REF)
        overrides.setdefault('vib_path', VIB_PATH)
        return new_task(**overrides)

    async def start(self, **overrides: Any) -> ProvisionHostTask:
        return await self.service.start(self.task(**overrides))

    async def run(self, **overrides: Any) -> ProvisionHostTask:
        """Start a task and wait for it to reach a terminal stage."""
        task = await self.start(**overrides)
        return await self.service.wait_for_terminal(task.task_id, timeout=5)

    async def patches(self, task_id: str) -> list[TaskPatch]:
        return [
            TaskPatch.from_document(doc)
            for doc in await self.service.history(task_id)
        ]

    def host_patches(self) -> list[dict[str, Any]]:
        return self.cloud_store.patches_for(HOST_REF)

    async def wait_until(
        self, predicate: Callable[[], Any], *, timeout: float = 5.0,
    ) -> None:
        await wait_until(predicate, timeout=timeout)

    async def wait_for_sub_stage(self, task_id: str, sub_stage) -> None:
        async def _reached() -> bool:
            task = await self.service.get(task_id)
            return task.sub_stage == sub_stage

        await wait_until(_reached)


@pytest.fixture
def make_harness(tmp_path) -> Callable[..., Harness]:
    def _make(
        *,
        host: dict[str, Any] | None = None,
        deployment: dict[str, Any] | None = None,
        populate_esx_version: bool = True,
        script_exit_code: int | None = 0,
        script_output: str = 'agent installed\n',
        **settings_overrides: Any,
    ) -> Harness:
        cloud_store = InMemoryCloudStore({
            HOST_REF: host_document(**(host or {})),
            DEPLOYMENT_REF: deployment_document(**(deployment or {})),
        })
        if populate_esx_version:
            cloud_store.on_get[HOST_REF] = _populate_esx_version_once_ready

        settings = DeployerSettings(
            script_directory=tmp_path / 'scripts',
            script_log_directory=tmp_path / 'script_logs',
            **settings_overrides,
        )
        network_factory = InMemoryNetworkControllerFactory()
        agent_factory = InMemoryAgentControlFactory()
        script_runner = InMemoryScriptRunner(
            exit_code=script_exit_code, output=script_output,
        )
        task_repo = InMemoryTaskRepository()
        handlers = ProvisionHostHandlers(
            cloud_store=cloud_store,
            network_factory=network_factory,
            agent_factory=agent_factory,
            script_runner=script_runner,
            settings=settings,
            sleep=no_sleep,
        )
        service = ProvisionHostTaskService(
            task_repo=task_repo, handlers=handlers, settings=settings,
        )
        return Harness(
            cloud_store=cloud_store,
            network_factory=network_factory,
            agent_factory=agent_factory,
            script_runner=script_runner,
            task_repo=task_repo,
            settings=settings,
            handlers=handlers,
            service=service,
        )

    return _make
