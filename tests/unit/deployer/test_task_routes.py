"""HTTP surface of the provision-host task service."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from deployer.app import DeployerSettings, create_app

TASKS = '/api/v1/provision-host-tasks'


def _body(**overrides):
    body = {
        'hostServiceLink': '/cloudstore/hosts/host-1',
        'deploymentServiceLink': '/cloudstore/deployments/dep-1',
        'vibPath': '/vibs/esxcloud-agent.vib',
        'pollInterval': 10,
    }
    body.update(overrides)
    return body


def _wait_for_stage(client: TestClient, task_id: str, stage: str) -> dict:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        doc = client.get(f'{TASKS}/{task_id}').json()
        if doc['taskState']['stage'] == stage:
            return doc
        time.sleep(0.01)
    raise AssertionError(f'task {task_id} never reached {stage}')


@pytest.fixture
def client(make_harness):
    harness = make_harness()
    app = create_app(
        harness.settings,
        task_repo=harness.task_repo,
        cloud_store=harness.cloud_store,
        network_factory=harness.network_factory,
        agent_factory=harness.agent_factory,
        script_runner=harness.script_runner,
    )
    with TestClient(app) as test_client:
        yield test_client


class TestCreate:
    def test_create_runs_to_finished(self, client):
        resp = client.post(TASKS, json=_body())

        assert resp.status_code == 201
        doc = resp.json()
        assert doc['taskState'] == {
            'stage': 'STARTED', 'subStage': 'PROVISION_NETWORK',
        }
        assert doc['maximumPollCount'] == 60
        assert doc['pollInterval'] == 10

        final = _wait_for_stage(client, doc['documentSelfLink'], 'FINISHED')
        assert final['taskState']['subStage'] is None

        history = client.get(f"{TASKS}/{doc['documentSelfLink']}/history").json()
        stages = [p['taskState']['stage'] for p in history['patches']]
        assert stages[0] == 'STARTED'
        assert stages[-1] == 'FINISHED'

    def test_missing_required_field_is_422(self, client):
        body = _body()
        del body['vibPath']

        assert client.post(TASKS, json=body).status_code == 422

    def test_non_positive_poll_count_is_422(self, client):
        resp = client.post(TASKS, json=_body(maximumPollCount=0))

        assert resp.status_code == 422

    def test_duplicate_id_is_400(self, client):
        body = _body(documentSelfLink='fixed-id', controlFlags=1)
        assert client.post(TASKS, json=body).status_code == 201

        resp = client.post(TASKS, json=body)

        assert resp.status_code == 400
        assert resp.json()['error'] == 'invalid_task'


class TestPatch:
    def test_cancel_then_reject(self, client):
        created = client.post(TASKS, json=_body(controlFlags=1)).json()
        task_id = created['documentSelfLink']

        resp = client.patch(
            f'{TASKS}/{task_id}', json={'taskState': {'stage': 'CANCELLED'}},
        )
        assert resp.status_code == 200
        assert resp.json()['taskState']['stage'] == 'CANCELLED'
        assert resp.json()['documentVersion'] == 1

        again = client.patch(
            f'{TASKS}/{task_id}',
            json={'taskState': {'stage': 'STARTED', 'subStage': 'INSTALL_AGENT'}},
        )
        assert again.status_code == 400
        assert 'invalid state transition' in again.json()['detail']
        assert client.get(f'{TASKS}/{task_id}').json()['taskState']['stage'] == (
            'CANCELLED'
        )

    def test_unknown_fields_are_rejected(self, client):
        created = client.post(TASKS, json=_body(controlFlags=1)).json()

        resp = client.patch(
            f"{TASKS}/{created['documentSelfLink']}",
            json={'taskState': {'stage': 'CANCELLED'}, 'vibPath': '/other.vib'},
        )

        assert resp.status_code == 422

    def test_sub_stage_outside_started_is_400(self, client):
        created = client.post(TASKS, json=_body(controlFlags=1)).json()

        resp = client.patch(
            f"{TASKS}/{created['documentSelfLink']}",
            json={'taskState': {'stage': 'FINISHED', 'subStage': 'INSTALL_AGENT'}},
        )

        assert resp.status_code == 400


class TestNotFound:
    def test_unknown_task_is_404(self, client):
        assert client.get(f'{TASKS}/missing').status_code == 404
        assert client.get(f'{TASKS}/missing/history').status_code == 404
        resp = client.patch(
            f'{TASKS}/missing', json={'taskState': {'stage': 'CANCELLED'}},
        )
        assert resp.status_code == 404
        assert resp.json()['error'] == 'task_not_found'


class TestAppFactory:
    def test_health(self, client):
        resp = client.get('/health')

        assert resp.status_code == 200
        assert resp.json() == {'status': 'ok', 'environment': 'local'}
        assert 'x-request-id' in resp.headers

    def test_shutdown_closes_network_factory(self, make_harness):
        harness = make_harness()
        app = create_app(
            harness.settings,
            task_repo=harness.task_repo,
            cloud_store=harness.cloud_store,
            network_factory=harness.network_factory,
            agent_factory=harness.agent_factory,
            script_runner=harness.script_runner,
        )

        with TestClient(app) as test_client:
            assert test_client.get('/health').status_code == 200
            assert harness.network_factory.closed is False

        assert harness.network_factory.closed is True

    def test_invalid_settings_raise(self):
        with pytest.raises(ValueError, match='host_update_retry_count'):
            create_app(DeployerSettings(host_update_retry_count=0))

    def test_non_local_requires_agent_and_task_storage(self):
        settings = DeployerSettings(
            environment='production', cloud_store_url='http://store:19000',
        )

        with pytest.raises(ValueError, match='task_repo, agent_factory'):
            create_app(settings)

    def test_local_defaults_run_against_seeded_store(self, tmp_path):
        app = create_app(DeployerSettings(
            script_directory=tmp_path / 'scripts',
            script_log_directory=tmp_path / 'script_logs',
        ))
        store = app.state.deps.cloud_store
        store.put('/cloudstore/hosts/host-1', {
            'hostAddress': '10.0.0.5',
            'userName': 'root',
            'password': 'host-secret',
            'esxVersion': '6.7.0',
        })
        store.put('/cloudstore/deployments/dep-1', {
            'imageDataStoreNames': ['image-ds'],
        })

        with TestClient(app) as local_client:
            created = local_client.post(TASKS, json=_body()).json()
            final = _wait_for_stage(
                local_client, created['documentSelfLink'], 'FINISHED',
            )

        assert final['taskState']['stage'] == 'FINISHED'
        assert store.patches_for('/cloudstore/hosts/host-1') == [{'state': 'READY'}]
