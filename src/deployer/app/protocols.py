"""Collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, httpx/subprocess-backed for real deployments) must
satisfy. The app factory and the task service accept any implementation that
matches them.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, Sequence, runtime_checkable

from .provisioning.agent import (
    AgentStatusResponse,
    ProvisionRequest,
    ProvisionResponse,
)
from .provisioning.network_models import (
    FabricNodeCreateSpec,
    NodeState,
    TransportNodeCreateSpec,
)


@runtime_checkable
class CloudStore(Protocol):
    """Typed get/patch of persisted host and deployment documents."""

    async def get(self, ref: str) -> dict[str, Any]: ...
    async def patch(self, ref: str, data: dict[str, Any]) -> dict[str, Any]: ...


@runtime_checkable
class NetworkController(Protocol):
    """Fabric and transport node registration with the overlay-network manager."""

    async def register_fabric_node(self, spec: FabricNodeCreateSpec) -> str: ...
    async def get_fabric_node_state(self, node_id: str) -> NodeState: ...
    async def create_transport_node(self, spec: TransportNodeCreateSpec) -> str: ...
    async def get_transport_node_state(self, node_id: str) -> NodeState: ...
    def get_host_thumbprint(self, address: str, port: int) -> str: ...


@runtime_checkable
class NetworkControllerFactory(Protocol):
    def create(
        self, address: str, username: str, password: str,
    ) -> NetworkController: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class AgentControl(Protocol):
    """RPC client for the host agent."""

    def set_endpoint(self, address: str, port: int) -> None: ...
    async def get_agent_status(self) -> AgentStatusResponse: ...
    async def provision(self, request: ProvisionRequest) -> ProvisionResponse: ...


@runtime_checkable
class AgentControlFactory(Protocol):
    def create(self) -> AgentControl: ...


@runtime_checkable
class ScriptRunner(Protocol):
    """Run a local script, redirecting stdout/stderr to ``output_path``."""

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        output_path: Path,
    ) -> int | None: ...


@runtime_checkable
class TaskRepository(Protocol):
    """Persistence of serialized task documents and their patch history."""

    async def create(self, document: dict[str, Any]) -> dict[str, Any]: ...
    async def get(self, task_id: str) -> dict[str, Any] | None: ...
    async def save(
        self, document: dict[str, Any], patch: dict[str, Any],
    ) -> dict[str, Any]: ...
    async def history(self, task_id: str) -> list[dict[str, Any]]: ...
    async def list_active(self) -> list[dict[str, Any]]: ...
    async def list_expired(self, now: datetime) -> list[dict[str, Any]]: ...
    async def delete(self, task_id: str) -> bool: ...
