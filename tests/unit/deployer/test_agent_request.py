"""Host/deployment records and the agent provision request builder."""

from __future__ import annotations

import pytest

from deployer.app.provisioning.agent import (
    DEFAULT_AGENT_LOG_LEVEL,
    AgentStatusCode,
    AgentStatusResponse,
    ProvisionResponse,
    ProvisionResultCode,
    build_provision_request,
    check_agent_status_response,
    check_provision_response,
    split_metadata_list,
    stats_host_tags,
)
from deployer.app.provisioning.errors import AgentNotReadyError, ProvisionFailedError
from deployer.app.provisioning.records import (
    DeploymentRecord,
    HostRecord,
    StatsStoreType,
    document_id,
    fabric_node_name,
    transport_node_description,
)


def _host(**overrides) -> HostRecord:
    doc = {
        'hostAddress': '10.0.0.5',
        'userName': 'root',
        'password': 'secret',
        'agentPort': 8835,
        'usageTags': ['CLOUD'],
        'metadata': {},
    }
    doc.update(overrides)
    return HostRecord.from_document(doc)


def _deployment(**overrides) -> DeploymentRecord:
    doc = {
        'imageDataStoreNames': ['image-ds'],
        'imageDataStoreUsedForVMs': True,
        'syslogEndpoint': '10.0.0.9:514',
        'ntpEndpoint': 'ntp.local',
        'statsEnabled': True,
        'statsStoreEndpoint': 'graphite.local',
        'statsStorePort': 2003,
        'statsStoreType': 'GRAPHITE',
    }
    doc.update(overrides)
    return DeploymentRecord.from_document(doc)


def _request(host: HostRecord, deployment: DeploymentRecord | None = None):
    return build_provision_request(
        host=host,
        deployment=deployment or _deployment(),
        host_ref='/cloudstore/hosts/host-1',
        deployment_ref='/cloudstore/deployments/dep-1',
    )


class TestRecords:
    def test_host_defaults(self):
        host = HostRecord.from_document({'hostAddress': '10.0.0.5'})
        assert host.agent_port == 8835
        assert host.usage_tags is None
        assert host.esx_version is None
        assert not host.management_only

    def test_management_only_requires_mgmt_without_cloud(self):
        assert _host(usageTags=['MGMT']).management_only
        assert not _host(usageTags=['MGMT', 'CLOUD']).management_only
        assert not _host(usageTags=['CLOUD']).management_only

    def test_document_id_and_naming(self):
        assert document_id('/cloudstore/hosts/host-1') == 'host-1'
        assert fabric_node_name('10.0.0.5') == 'FabricNode-10.0.0.5'
        assert transport_node_description('10.0.0.5') == (
            'Transport node for host 10.0.0.5'
        )


class TestMetadataParsing:
    def test_split_trims_around_commas(self):
        assert split_metadata_list({'k': 'ds1 ,  ds2,ds3'}, 'k') == ('ds1', 'ds2', 'ds3')

    def test_trailing_empty_entries_are_dropped(self):
        assert split_metadata_list({'k': 'ds1, ds2,'}, 'k') == ('ds1', 'ds2')
        assert split_metadata_list({'k': 'ds1,,'}, 'k') == ('ds1',)
        assert split_metadata_list({'k': ''}, 'k') == ()

    def test_missing_key_is_none(self):
        assert split_metadata_list({}, 'k') is None
        assert split_metadata_list(None, 'k') is None

    def test_stats_host_tags_sorted_and_dash_joined(self):
        assert stats_host_tags(frozenset({'MGMT', 'CLOUD'})) == 'CLOUD-MGMT'
        assert stats_host_tags(None) is None


class TestBuildProvisionRequest:
    def test_full_request(self):
        host = _host(
            usageTags=['MGMT'],
            metadata={
                'allowed_datastores': 'ds1, ds2',
                'allowed_networks': 'VM Network',
            },
        )
        request = _request(host)

        assert request.datastores == ('ds1', 'ds2')
        assert request.networks == ('VM Network',)
        assert request.image_datastores == frozenset({'image-ds'})
        assert request.image_datastore_used_for_vms is True
        assert request.address == '10.0.0.5'
        assert request.port == 8835
        assert request.memory_overcommit == 0
        assert request.syslog_endpoint == '10.0.0.9:514'
        assert request.log_level == DEFAULT_AGENT_LOG_LEVEL
        assert request.management_only is True
        assert request.host_id == 'host-1'
        assert request.deployment_id == 'dep-1'
        assert request.ntp_endpoint == 'ntp.local'

        stats = request.stats_plugin_config
        assert stats.enabled is True
        assert stats.store_endpoint == 'graphite.local'
        assert stats.store_port == 2003
        assert stats.store_type == StatsStoreType.GRAPHITE
        assert stats.host_tags == 'MGMT'

    def test_absent_metadata_keys_leave_lists_unset(self):
        request = _request(_host(metadata=None))
        assert request.datastores is None
        assert request.networks is None


class TestResponseValidation:
    def test_ready_status_passes(self):
        check_agent_status_response(
            AgentStatusResponse(AgentStatusCode.READY), '10.0.0.5',
        )

    @pytest.mark.parametrize('status', [
        AgentStatusCode.RESTARTING,
        AgentStatusCode.UPGRADING,
        AgentStatusCode.IMAGE_DATASTORE_NOT_CONNECTED,
    ])
    def test_non_ready_status_raises(self, status):
        with pytest.raises(AgentNotReadyError, match=status.value):
            check_agent_status_response(AgentStatusResponse(status), '10.0.0.5')

    def test_missing_status_raises(self):
        with pytest.raises(AgentNotReadyError):
            check_agent_status_response(None, '10.0.0.5')

    def test_provision_not_ok_raises_with_detail(self):
        check_provision_response(ProvisionResponse(ProvisionResultCode.OK))
        with pytest.raises(ProvisionFailedError, match='INVALID_CONFIG: bad datastore'):
            check_provision_response(
                ProvisionResponse(ProvisionResultCode.INVALID_CONFIG, 'bad datastore'),
            )
