"""Read-only views over the host and deployment documents in the cloud store.

Only the fields the provision-host task reads or writes are modelled.
Wire names follow the cloud-store document layout (camelCase).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping

METADATA_KEY_ALLOWED_DATASTORES = 'allowed_datastores'
METADATA_KEY_ALLOWED_NETWORKS = 'allowed_networks'

HOST_SWITCH_NAME = 'DeployerHostSwitch'


class HostState(str, enum.Enum):
    CREATING = 'CREATING'
    NOT_PROVISIONED = 'NOT_PROVISIONED'
    READY = 'READY'
    MAINTENANCE = 'MAINTENANCE'
    SUSPENDED = 'SUSPENDED'
    ERROR = 'ERROR'


class UsageTag(str, enum.Enum):
    MGMT = 'MGMT'
    CLOUD = 'CLOUD'
    IMAGE = 'IMAGE'


class StatsStoreType(str, enum.Enum):
    GRAPHITE = 'GRAPHITE'
    KAIROS_DB = 'KAIROS_DB'


@dataclass(frozen=True, slots=True)
class HostRecord:
    address: str
    user: str
    password: str
    agent_port: int
    state: HostState | None = None
    usage_tags: frozenset[str] | None = None
    metadata: Mapping[str, str] | None = None
    esx_version: str | None = None
    nsx_fabric_node_id: str | None = None
    nsx_transport_node_id: str | None = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> HostRecord:
        tags = doc.get('usageTags')
        state = doc.get('state')
        return cls(
            address=doc['hostAddress'],
            user=doc.get('userName', ''),
            password=doc.get('password', ''),
            agent_port=int(doc.get('agentPort') or 8835),
            state=HostState(state) if state else None,
            usage_tags=frozenset(tags) if tags is not None else None,
            metadata=doc.get('metadata'),
            esx_version=doc.get('esxVersion'),
            nsx_fabric_node_id=doc.get('nsxFabricNodeId'),
            nsx_transport_node_id=doc.get('nsxTransportNodeId'),
        )

    @property
    def management_only(self) -> bool:
        return (
            self.usage_tags is not None
            and UsageTag.MGMT.value in self.usage_tags
            and UsageTag.CLOUD.value not in self.usage_tags
        )


@dataclass(frozen=True, slots=True)
class DeploymentRecord:
    virtual_network_enabled: bool = False
    network_manager_address: str | None = None
    network_manager_username: str | None = None
    network_manager_password: str | None = None
    network_zone_id: str | None = None
    image_data_store_names: frozenset[str] = field(default_factory=frozenset)
    image_data_store_used_for_vms: bool = False
    syslog_endpoint: str | None = None
    ntp_endpoint: str | None = None
    stats_enabled: bool = False
    stats_store_endpoint: str | None = None
    stats_store_port: int | None = None
    stats_store_type: StatsStoreType | None = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> DeploymentRecord:
        store_type = doc.get('statsStoreType')
        port = doc.get('statsStorePort')
        return cls(
            virtual_network_enabled=bool(doc.get('virtualNetworkEnabled')),
            network_manager_address=doc.get('networkManagerAddress'),
            network_manager_username=doc.get('networkManagerUsername'),
            network_manager_password=doc.get('networkManagerPassword'),
            network_zone_id=doc.get('networkZoneId'),
            image_data_store_names=frozenset(
                doc.get('imageDataStoreNames') or ()
            ),
            image_data_store_used_for_vms=bool(
                doc.get('imageDataStoreUsedForVMs')
            ),
            syslog_endpoint=doc.get('syslogEndpoint'),
            ntp_endpoint=doc.get('ntpEndpoint'),
            stats_enabled=bool(doc.get('statsEnabled')),
            stats_store_endpoint=doc.get('statsStoreEndpoint'),
            stats_store_port=int(port) if port is not None else None,
            stats_store_type=StatsStoreType(store_type) if store_type else None,
        )


def document_id(link: str) -> str:
    """Bare id of a document link (its last path segment)."""
    return link.rstrip('/').rsplit('/', 1)[-1]


def fabric_node_name(host_address: str) -> str:
    return f'FabricNode-{host_address}'


def fabric_node_description(host_address: str) -> str:
    return f'Fabric node for host {host_address}'


def transport_node_name(host_address: str) -> str:
    return f'TransportNode-{host_address}'


def transport_node_description(host_address: str) -> str:
    return f'Transport node for host {host_address}'
