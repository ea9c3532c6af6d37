"""Task document defaults and wire format."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from deployer.app.provisioning.task_state import (
    POLLING_SUB_STAGES,
    TERMINAL_STAGES,
    ControlFlags,
    ProvisionHostTask,
    SubStage,
    TaskFailure,
    TaskPatch,
    TaskStage,
    TaskState,
    default_expiration,
    disable_processing_on_transition,
    is_processing_disabled,
    new_task,
)


def _task(**overrides) -> ProvisionHostTask:
    return new_task(
        host_ref='/cloudstore/hosts/h1',
        deployment_ref='/cloudstore/deployments/d1',
        vib_path='/vibs/agent.vib',
        **overrides,
    )


class TestDefaults:
    def test_new_task_defaults(self):
        task = _task()
        assert task.stage == TaskStage.CREATED
        assert task.sub_stage is None
        assert task.control_flags == 0
        assert task.maximum_poll_count == 60
        assert task.poll_interval == 5000
        assert task.poll_count == 0
        assert task.document_version == 0
        assert len(task.task_id) == 32

    def test_new_task_overrides(self):
        task = _task(task_id='t1', maximum_poll_count=3, poll_interval=10)
        assert task.task_id == 't1'
        assert task.maximum_poll_count == 3
        assert task.poll_interval == 10

    def test_default_expiration_is_one_day(self):
        now = datetime(2026, 1, 1, tzinfo=UTC)
        assert default_expiration(now) == now + timedelta(days=1)


class TestOrdering:
    def test_sub_stage_ordinals_follow_declaration_order(self):
        ordinals = [s.ordinal for s in SubStage]
        assert ordinals == list(range(7))
        assert SubStage.PROVISION_NETWORK.ordinal < SubStage.WAIT_FOR_HOST_UPDATES.ordinal

    def test_terminal_stages(self):
        assert TERMINAL_STAGES == {
            TaskStage.FINISHED, TaskStage.FAILED, TaskStage.CANCELLED,
        }
        assert TaskStage.CANCELLED.is_terminal
        assert not TaskStage.STARTED.is_terminal

    def test_polling_sub_stages(self):
        assert POLLING_SUB_STAGES == {
            SubStage.WAIT_FOR_INSTALLATION,
            SubStage.WAIT_FOR_PROVISION,
            SubStage.WAIT_FOR_HOST_UPDATES,
        }


class TestControlFlags:
    def test_bit_values(self):
        assert ControlFlags.DISABLE_PROCESSING == 1
        assert ControlFlags.DISABLE_ON_TRANSITION == 2

    def test_helpers(self):
        assert is_processing_disabled(1)
        assert is_processing_disabled(3)
        assert not is_processing_disabled(2)
        assert not is_processing_disabled(None)
        assert disable_processing_on_transition(2)
        assert not disable_processing_on_transition(1)


class TestWireFormat:
    def test_document_uses_camel_case_names(self):
        expiration = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        task = _task(
            task_id='t1',
            task_state=TaskState(TaskStage.STARTED, SubStage.INSTALL_AGENT),
            poll_count=2,
            expiration_time=expiration,
        )
        doc = task.to_document()
        assert doc['documentSelfLink'] == 't1'
        assert doc['taskState'] == {
            'stage': 'STARTED', 'subStage': 'INSTALL_AGENT',
        }
        assert doc['hostServiceLink'] == '/cloudstore/hosts/h1'
        assert doc['deploymentServiceLink'] == '/cloudstore/deployments/d1'
        assert doc['vibPath'] == '/vibs/agent.vib'
        assert doc['pollCount'] == 2
        assert doc['expirationTime'] == '2026-01-02T03:04:05+00:00'

    def test_document_round_trip_keeps_failure(self):
        failure = TaskFailure('boom', stack_trace='trace', error_kind='RuntimeError')
        task = _task(task_state=TaskState(TaskStage.FAILED, failure=failure))
        restored = ProvisionHostTask.from_document(task.to_document())
        assert restored == task
        assert task.to_document()['taskState']['failure'] == {
            'message': 'boom', 'stackTrace': 'trace', 'errorKind': 'RuntimeError',
        }

    def test_from_document_fills_defaults(self):
        task = ProvisionHostTask.from_document({
            'documentSelfLink': 't1',
            'hostServiceLink': 'h',
            'deploymentServiceLink': 'd',
            'vibPath': 'v',
        })
        assert task.stage == TaskStage.CREATED
        assert task.maximum_poll_count == 60
        assert task.poll_interval == 5000
        assert task.expiration_time is None

    def test_patch_is_sparse(self):
        patch = TaskPatch(task_state=TaskState(TaskStage.CANCELLED))
        assert patch.to_document() == {
            'taskState': {'stage': 'CANCELLED', 'subStage': None},
        }
        assert TaskPatch.from_document(patch.to_document()) == patch
