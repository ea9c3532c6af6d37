"""Provision-host task document, validation and patch helpers."""

from .errors import (
    AgentNotReadyError,
    AgentProvisionError,
    NetworkNodeFailedError,
    ProvisionFailedError,
    RetryLimitExceeded,
    ScriptExecutionError,
    ScriptTimeoutError,
    TaskNotFoundError,
)
from .patches import StageResult, build_patch, failure_patch, progress_patch
from .retry import retry_or_fail
from .state_machine import (
    InvalidStateTransition,
    TaskValidationError,
    apply_patch,
    validate_patch,
    validate_task,
)
from .task_state import (
    TERMINAL_STAGES,
    ControlFlags,
    ProvisionHostTask,
    SubStage,
    TaskFailure,
    TaskPatch,
    TaskStage,
    TaskState,
    new_task,
)

__all__ = [
    'AgentNotReadyError',
    'AgentProvisionError',
    'ControlFlags',
    'InvalidStateTransition',
    'NetworkNodeFailedError',
    'ProvisionFailedError',
    'ProvisionHostTask',
    'RetryLimitExceeded',
    'ScriptExecutionError',
    'ScriptTimeoutError',
    'StageResult',
    'SubStage',
    'TERMINAL_STAGES',
    'TaskFailure',
    'TaskNotFoundError',
    'TaskPatch',
    'TaskStage',
    'TaskState',
    'TaskValidationError',
    'apply_patch',
    'build_patch',
    'failure_patch',
    'new_task',
    'progress_patch',
    'retry_or_fail',
    'validate_patch',
    'validate_task',
]
