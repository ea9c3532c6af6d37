"""In-memory collaborator implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but store everything in dicts (no persistence across restarts). The fakes
also record the calls they receive so tests can assert on side-effects.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from .provisioning.agent import (
    AgentStatusCode,
    AgentStatusResponse,
    ProvisionRequest,
    ProvisionResponse,
    ProvisionResultCode,
)
from .provisioning.network_models import (
    FabricNodeCreateSpec,
    NodeState,
    TransportNodeCreateSpec,
)
from .provisioning.task_state import TaskStage


class DocumentNotFoundError(KeyError):
    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(ref)

    def __str__(self) -> str:
        return f'document {self.ref!r} not found'


class InMemoryCloudStore:
    """Host and deployment documents keyed by their link.

    ``on_get`` hooks let a test mutate a document between fetches (for
    example, populate ``esxVersion`` once the host reports READY).
    """

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._documents: dict[str, dict[str, Any]] = {
            ref: dict(doc) for ref, doc in (documents or {}).items()
        }
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.get_calls: list[str] = []
        self.get_errors: dict[str, list[BaseException]] = {}
        self.on_get: dict[str, Callable[[dict[str, Any]], None]] = {}

    def put(self, ref: str, document: dict[str, Any]) -> None:
        self._documents[ref] = dict(document)

    def document(self, ref: str) -> dict[str, Any]:
        return self._documents[ref]

    def patches_for(self, ref: str) -> list[dict[str, Any]]:
        return [data for patched, data in self.patches if patched == ref]

    async def get(self, ref: str) -> dict[str, Any]:
        self.get_calls.append(ref)
        pending = self.get_errors.get(ref)
        if pending:
            raise pending.pop(0)
        if ref not in self._documents:
            raise DocumentNotFoundError(ref)
        hook = self.on_get.get(ref)
        if hook is not None:
            hook(self._documents[ref])
        return copy.deepcopy(self._documents[ref])

    async def patch(self, ref: str, data: dict[str, Any]) -> dict[str, Any]:
        if ref not in self._documents:
            raise DocumentNotFoundError(ref)
        self.patches.append((ref, dict(data)))
        self._documents[ref].update(data)
        return copy.deepcopy(self._documents[ref])


class InMemoryNetworkController:
    """Overlay-network controller fake.

    Node states are served from per-node scripts; once a script is drained
    the node reports ``final_state``.
    """

    def __init__(
        self,
        *,
        final_state: NodeState = NodeState.SUCCESS,
        thumbprint: str = 'AA:BB:CC',
    ) -> None:
        self.final_state = final_state
        self.thumbprint = thumbprint
        self.fabric_node_specs: list[FabricNodeCreateSpec] = []
        self.transport_node_specs: list[TransportNodeCreateSpec] = []
        self.state_scripts: dict[str, list[NodeState]] = {}
        self.state_polls: list[str] = []
        self.thumbprint_requests: list[tuple[str, int]] = []

    async def register_fabric_node(self, spec: FabricNodeCreateSpec) -> str:
        self.fabric_node_specs.append(spec)
        return f'fabric-{len(self.fabric_node_specs)}'

    async def get_fabric_node_state(self, node_id: str) -> NodeState:
        return self._next_state(node_id)

    async def create_transport_node(self, spec: TransportNodeCreateSpec) -> str:
        self.transport_node_specs.append(spec)
        return f'transport-{len(self.transport_node_specs)}'

    async def get_transport_node_state(self, node_id: str) -> NodeState:
        return self._next_state(node_id)

    def get_host_thumbprint(self, address: str, port: int) -> str:
        self.thumbprint_requests.append((address, port))
        return self.thumbprint

    def _next_state(self, node_id: str) -> NodeState:
        self.state_polls.append(node_id)
        script = self.state_scripts.get(node_id)
        if script:
            return script.pop(0)
        return self.final_state


class InMemoryNetworkControllerFactory:
    """Hands out one shared controller and records the credentials used."""

    def __init__(self, controller: InMemoryNetworkController | None = None) -> None:
        self.controller = controller or InMemoryNetworkController()
        self.created_for: list[tuple[str, str, str]] = []
        self.closed = False

    def create(
        self, address: str, username: str, password: str,
    ) -> InMemoryNetworkController:
        self.created_for.append((address, username, password))
        return self.controller

    async def aclose(self) -> None:
        self.closed = True


class InMemoryAgentControl:
    """Agent RPC fake sharing its response scripts with the factory."""

    def __init__(self, factory: InMemoryAgentControlFactory) -> None:
        self._factory = factory
        self.endpoint: tuple[str, int] | None = None

    def set_endpoint(self, address: str, port: int) -> None:
        self.endpoint = (address, port)
        self._factory.endpoints.append((address, port))

    async def get_agent_status(self) -> AgentStatusResponse:
        self._factory.status_calls += 1
        if self._factory.status_script:
            outcome = self._factory.status_script.pop(0)
        else:
            outcome = self._factory.default_status
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def provision(self, request: ProvisionRequest) -> ProvisionResponse:
        self._factory.provision_requests.append(request)
        outcome = self._factory.provision_outcome
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class InMemoryAgentControlFactory:
    def __init__(self) -> None:
        self.default_status: AgentStatusResponse | BaseException = (
            AgentStatusResponse(status=AgentStatusCode.READY)
        )
        self.status_script: list[AgentStatusResponse | BaseException] = []
        self.provision_outcome: ProvisionResponse | BaseException = (
            ProvisionResponse(result=ProvisionResultCode.OK)
        )
        self.status_calls = 0
        self.provision_requests: list[ProvisionRequest] = []
        self.endpoints: list[tuple[str, int]] = []

    def create(self) -> InMemoryAgentControl:
        return InMemoryAgentControl(self)


class InMemoryScriptRunner:
    """Records commands and writes ``output`` to the redirection file."""

    def __init__(self, *, exit_code: int | None = 0, output: str = '') -> None:
        self.exit_code = exit_code
        self.output = output
        self.runs: list[dict[str, Any]] = []

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        output_path: Path,
    ) -> int | None:
        self.runs.append({
            'command': list(command),
            'cwd': cwd,
            'timeout_seconds': timeout_seconds,
            'output_path': output_path,
        })
        output_path.write_text(self.output)
        return self.exit_code


class InMemoryTaskRepository:
    """Serialized task documents plus their accepted-patch history."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._history: dict[str, list[dict[str, Any]]] = {}

    async def create(self, document: dict[str, Any]) -> dict[str, Any]:
        task_id = document.get('documentSelfLink') or uuid.uuid4().hex
        stored = {**copy.deepcopy(document), 'documentSelfLink': task_id}
        self._documents[task_id] = stored
        self._history[task_id] = []
        return copy.deepcopy(stored)

    async def get(self, task_id: str) -> dict[str, Any] | None:
        document = self._documents.get(task_id)
        return copy.deepcopy(document) if document is not None else None

    async def save(
        self, document: dict[str, Any], patch: dict[str, Any],
    ) -> dict[str, Any]:
        task_id = document['documentSelfLink']
        if task_id not in self._documents:
            raise KeyError(task_id)
        self._documents[task_id] = copy.deepcopy(document)
        self._history[task_id].append(copy.deepcopy(patch))
        return copy.deepcopy(document)

    async def history(self, task_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._history.get(task_id, []))

    async def list_active(self) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(doc) for doc in self._documents.values()
            if (doc.get('taskState') or {}).get('stage') == TaskStage.STARTED.value
        ]

    async def list_expired(self, now: datetime) -> list[dict[str, Any]]:
        expired = []
        for doc in self._documents.values():
            expiration = doc.get('expirationTime')
            if expiration and datetime.fromisoformat(expiration) <= now:
                expired.append(copy.deepcopy(doc))
        return expired

    async def delete(self, task_id: str) -> bool:
        self._history.pop(task_id, None)
        return self._documents.pop(task_id, None) is not None
