"""Provision-host error hierarchy.

Validation errors (rejected documents and patches) live in
``state_machine``; everything here describes a remote collaborator
outcome that ends up as a task failure cause.
"""

from __future__ import annotations


class TaskNotFoundError(KeyError):
    """Raised when a task id has no persisted document."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f'provision host task {self.task_id!r} not found'


class AgentNotReadyError(RuntimeError):
    """Agent status response did not report READY."""

    def __init__(self, host_address: str, status: str) -> None:
        self.host_address = host_address
        self.status = status
        super().__init__(
            f'agent on host {host_address} is not ready (status={status})'
        )


class ProvisionFailedError(RuntimeError):
    """Agent provision response did not report OK."""

    def __init__(self, result: str, detail: str | None = None) -> None:
        self.result = result
        self.detail = detail
        message = f'agent provision returned {result}'
        if detail:
            message = f'{message}: {detail}'
        super().__init__(message)


class NetworkNodeFailedError(RuntimeError):
    """Fabric or transport node reached a failed state, or never settled."""


class ScriptExecutionError(RuntimeError):
    """Install script exited with a non-zero or missing exit code."""

    def __init__(self, host_address: str, exit_code: int | None) -> None:
        self.host_address = host_address
        self.exit_code = exit_code
        super().__init__(
            f'Deploying the agent to host {host_address} failed with '
            f'exit code {exit_code}'
        )


class ScriptTimeoutError(RuntimeError):
    """Install script exceeded its timeout and was killed."""


class RetryLimitExceeded(RuntimeError):
    """Polling budget exhausted for a sub-stage."""

    def __init__(self, message: str, *, limit: int) -> None:
        self.limit = limit
        super().__init__(message)


class AgentProvisionError(RuntimeError):
    """Provisioning the agent failed (RPC error or negative response)."""

    def __init__(self, host_address: str, cause: BaseException) -> None:
        self.host_address = host_address
        super().__init__(
            f'Provisioning the agent on host {host_address} failed with '
            f'error: {cause}'
        )
