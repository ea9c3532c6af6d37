"""Agent control request/response shapes and the provision request builder."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

from .errors import AgentNotReadyError, ProvisionFailedError
from .records import (
    METADATA_KEY_ALLOWED_DATASTORES,
    METADATA_KEY_ALLOWED_NETWORKS,
    DeploymentRecord,
    HostRecord,
    StatsStoreType,
    document_id,
)

DEFAULT_AGENT_LOG_LEVEL = 'debug'
OVERCOMMIT_RATIO = 0

_COMMA_DELIMITED = re.compile(r'\s*,\s*')


class AgentStatusCode(str, enum.Enum):
    READY = 'READY'
    RESTARTING = 'RESTARTING'
    UPGRADING = 'UPGRADING'
    IMAGE_DATASTORE_NOT_CONNECTED = 'IMAGE_DATASTORE_NOT_CONNECTED'


class ProvisionResultCode(str, enum.Enum):
    OK = 'OK'
    INVALID_CONFIG = 'INVALID_CONFIG'
    INVALID_STATE = 'INVALID_STATE'
    SYSTEM_ERROR = 'SYSTEM_ERROR'


@dataclass(frozen=True, slots=True)
class AgentStatusResponse:
    status: AgentStatusCode


@dataclass(frozen=True, slots=True)
class ProvisionResponse:
    result: ProvisionResultCode
    error: str | None = None


@dataclass(frozen=True, slots=True)
class StatsPluginConfig:
    enabled: bool
    store_endpoint: str | None = None
    store_port: int | None = None
    store_type: StatsStoreType | None = None
    host_tags: str | None = None


@dataclass(frozen=True, slots=True)
class ProvisionRequest:
    datastores: tuple[str, ...] | None
    image_datastores: frozenset[str]
    image_datastore_used_for_vms: bool
    networks: tuple[str, ...] | None
    address: str
    port: int
    memory_overcommit: int
    syslog_endpoint: str | None
    log_level: str
    stats_plugin_config: StatsPluginConfig
    management_only: bool
    host_id: str
    deployment_id: str
    ntp_endpoint: str | None


def check_agent_status_response(
    response: AgentStatusResponse | None,
    host_address: str,
) -> None:
    if response is None:
        raise AgentNotReadyError(host_address, 'NO_RESPONSE')
    if response.status != AgentStatusCode.READY:
        raise AgentNotReadyError(host_address, response.status.value)


def check_provision_response(response: ProvisionResponse | None) -> None:
    if response is None:
        raise ProvisionFailedError('NO_RESPONSE')
    if response.result != ProvisionResultCode.OK:
        raise ProvisionFailedError(response.result.value, response.error)


def split_metadata_list(
    metadata: dict[str, str] | None,
    key: str,
) -> tuple[str, ...] | None:
    """Split a comma-delimited metadata value; ``None`` when the key is absent.

    Trailing empty entries are dropped (``"ds1, ds2,"`` gives two names).
    """
    if not metadata or key not in metadata:
        return None
    parts = _COMMA_DELIMITED.split(metadata[key].strip())
    while parts and not parts[-1]:
        parts.pop()
    return tuple(parts)


def stats_host_tags(usage_tags: frozenset[str] | None) -> str | None:
    """Sorted usage tags joined by ``-`` (e.g. ``CLOUD-MGMT``)."""
    if usage_tags is None:
        return None
    return '-'.join(sorted(tag for tag in usage_tags if tag is not None))


def build_provision_request(
    *,
    host: HostRecord,
    deployment: DeploymentRecord,
    host_ref: str,
    deployment_ref: str,
) -> ProvisionRequest:
    metadata = dict(host.metadata) if host.metadata is not None else None
    stats = StatsPluginConfig(
        enabled=deployment.stats_enabled,
        store_endpoint=deployment.stats_store_endpoint,
        store_port=deployment.stats_store_port,
        store_type=deployment.stats_store_type,
        host_tags=stats_host_tags(host.usage_tags),
    )
    return ProvisionRequest(
        datastores=split_metadata_list(metadata, METADATA_KEY_ALLOWED_DATASTORES),
        image_datastores=deployment.image_data_store_names,
        image_datastore_used_for_vms=deployment.image_data_store_used_for_vms,
        networks=split_metadata_list(metadata, METADATA_KEY_ALLOWED_NETWORKS),
        address=host.address,
        port=host.agent_port,
        memory_overcommit=OVERCOMMIT_RATIO,
        syslog_endpoint=deployment.syslog_endpoint,
        log_level=DEFAULT_AGENT_LOG_LEVEL,
        stats_plugin_config=stats,
        management_only=host.management_only,
        host_id=document_id(host_ref),
        deployment_id=document_id(deployment_ref),
        ntp_endpoint=deployment.ntp_endpoint,
    )
