"""PROVISION_NETWORK sub-stage: fabric and transport node registration.

Flow:
  deployment.virtualNetworkEnabled == false -> INSTALL_AGENT
  host.nsxFabricNodeId unset -> register fabric node, poll until SUCCESS
  host.nsxTransportNodeId unset -> create transport node, poll until SUCCESS
  patch host with both ids -> INSTALL_AGENT

A persisted id on the host means the matching remote side-effect already
succeeded; it is never re-issued.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..protocols import CloudStore, NetworkController, NetworkControllerFactory
from ..settings import DeployerSettings
from .errors import NetworkNodeFailedError
from .network_models import (
    IN_FLIGHT_NODE_STATES,
    FabricNodeCreateSpec,
    HostNodeLoginCredential,
    HostSwitch,
    NodeState,
    TransportNodeCreateSpec,
    TransportZoneEndPoint,
)
from .patches import StageResult, progress_patch
from .records import (
    HOST_SWITCH_NAME,
    DeploymentRecord,
    HostRecord,
    fabric_node_description,
    fabric_node_name,
    transport_node_description,
    transport_node_name,
)
from .task_state import ProvisionHostTask, SubStage, TaskStage

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class NetworkProvisioner:
    """Registers a host with the overlay-network controller."""

    def __init__(
        self,
        *,
        cloud_store: CloudStore,
        network_factory: NetworkControllerFactory,
        settings: DeployerSettings,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cloud_store = cloud_store
        self._network_factory = network_factory
        self._settings = settings
        self._sleep = sleep

    async def provision(self, task: ProvisionHostTask) -> StageResult:
        deployment = DeploymentRecord.from_document(
            await self._cloud_store.get(task.deployment_ref)
        )
        if not deployment.virtual_network_enabled:
            logger.info(
                'Skip setting up virtual network (disabled)',
                extra={'task_id': task.task_id},
            )
            return self._advance(task)

        host = HostRecord.from_document(
            await self._cloud_store.get(task.host_ref)
        )
        client = self._network_factory.create(
            deployment.network_manager_address or '',
            deployment.network_manager_username or '',
            deployment.network_manager_password or '',
        )

        fabric_node_id = host.nsx_fabric_node_id
        host_patch: dict[str, str] = {}
        if fabric_node_id is not None:
            logger.info(
                'Skip registering fabric node: host=%s fabric_node=%s',
                host.address,
                fabric_node_id,
                extra={'task_id': task.task_id},
            )
        else:
            fabric_node_id = await self._register_fabric_node(task, client, host)
            host_patch['nsxFabricNodeId'] = fabric_node_id

        if host.nsx_transport_node_id is not None:
            logger.info(
                'Skip creating transport node: host=%s transport_node=%s',
                host.address,
                host.nsx_transport_node_id,
                extra={'task_id': task.task_id},
            )
        else:
            transport_node_id = await self._create_transport_node(
                task, client, host, deployment, fabric_node_id,
            )
            host_patch['nsxFabricNodeId'] = fabric_node_id
            host_patch['nsxTransportNodeId'] = transport_node_id

        if host_patch:
            await self._cloud_store.patch(task.host_ref, host_patch)
        return self._advance(task)

    async def _register_fabric_node(
        self,
        task: ProvisionHostTask,
        client: NetworkController,
        host: HostRecord,
    ) -> str:
        thumbprint = await asyncio.to_thread(
            client.get_host_thumbprint, host.address, self._settings.esxi_port,
        )
        spec = FabricNodeCreateSpec(
            display_name=fabric_node_name(host.address),
            description=fabric_node_description(host.address),
            ip_addresses=(host.address,),
            host_credential=HostNodeLoginCredential(
                username=host.user,
                password=host.password,
                thumbprint=thumbprint,
            ),
        )
        node_id = await client.register_fabric_node(spec)
        logger.info(
            'Fabric node registered: host=%s fabric_node=%s',
            host.address,
            node_id,
            extra={'task_id': task.task_id},
        )
        await self._wait_for_node(
            task,
            client.get_fabric_node_state,
            node_id,
            failure_message='Failed to register host as fabric node',
        )
        return node_id

    async def _create_transport_node(
        self,
        task: ProvisionHostTask,
        client: NetworkController,
        host: HostRecord,
        deployment: DeploymentRecord,
        fabric_node_id: str,
    ) -> str:
        endpoints: tuple[TransportZoneEndPoint, ...] = ()
        if deployment.network_zone_id is not None:
            endpoints = (TransportZoneEndPoint(deployment.network_zone_id),)
        spec = TransportNodeCreateSpec(
            display_name=transport_node_name(host.address),
            description=transport_node_description(host.address),
            node_id=fabric_node_id,
            host_switches=(HostSwitch(HOST_SWITCH_NAME),),
            transport_zone_endpoints=endpoints,
        )
        node_id = await client.create_transport_node(spec)
        logger.info(
            'Transport node created: host=%s transport_node=%s',
            host.address,
            node_id,
            extra={'task_id': task.task_id},
        )
        await self._wait_for_node(
            task,
            client.get_transport_node_state,
            node_id,
            failure_message='Failed to create transport node for host',
        )
        return node_id

    async def _wait_for_node(
        self,
        task: ProvisionHostTask,
        get_state: Callable[[str], Awaitable[NodeState]],
        node_id: str,
        *,
        failure_message: str,
    ) -> None:
        limit = self._settings.network_max_poll_count
        for attempt in range(1, limit + 1):
            await self._sleep(task.poll_interval / 1000)
            state = await get_state(node_id)
            if state == NodeState.SUCCESS:
                return
            if state not in IN_FLIGHT_NODE_STATES:
                raise NetworkNodeFailedError(
                    f'{failure_message}: node={node_id} state={state.value}'
                )
            logger.debug(
                'Node %s is %s (poll %d/%d)',
                node_id,
                state.value,
                attempt,
                limit,
                extra={'task_id': task.task_id},
            )
        raise NetworkNodeFailedError(
            f'{failure_message}: node={node_id} did not reach SUCCESS '
            f'after {limit} polls'
        )

    @staticmethod
    def _advance(task: ProvisionHostTask) -> StageResult:
        return StageResult(
            patch=progress_patch(
                task, TaskStage.STARTED, SubStage.INSTALL_AGENT,
            ),
        )
