"""Deployer FastAPI application factory.

The create_app() factory is the single entry point for building the deployer
ASGI application. It wires the provision-host task service to its
collaborators (document store, network controller, agent control, script
runner, task repository) via dependency injection.

Usage:
    # Local development (all collaborators in memory)
    from deployer.app import create_app, DeployerSettings
    app = create_app(DeployerSettings())

    # Non-local (httpx/subprocess clients built from settings)
    settings = DeployerSettings.from_env()
    app = create_app(settings, agent_factory=..., task_repo=...)

    # Testing (full DI control)
    app = create_app(settings, cloud_store=fake_store, ...)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from .observability import configure_logging
from .protocols import (
    AgentControlFactory,
    CloudStore,
    NetworkControllerFactory,
    ScriptRunner,
    TaskRepository,
)
from .provisioning.dispatcher import ProvisionHostTaskService
from .provisioning.handlers import ProvisionHostHandlers
from .provisioning.network import Sleep
from .settings import DeployerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for all injected collaborator instances.

    Stored on ``app.state.deps`` so tests can reach the fakes.
    """

    task_repo: TaskRepository
    cloud_store: CloudStore
    network_factory: NetworkControllerFactory
    agent_factory: AgentControlFactory
    script_runner: ScriptRunner


def _build_inmemory_deps() -> AppDependencies:
    """Construct all-InMemory dependencies for local development."""
    from .inmemory import (
        InMemoryAgentControlFactory,
        InMemoryCloudStore,
        InMemoryNetworkControllerFactory,
        InMemoryScriptRunner,
        InMemoryTaskRepository,
    )

    return AppDependencies(
        task_repo=InMemoryTaskRepository(),
        cloud_store=InMemoryCloudStore(),
        network_factory=InMemoryNetworkControllerFactory(),
        agent_factory=InMemoryAgentControlFactory(),
        script_runner=InMemoryScriptRunner(),
    )


def _build_remote_deps(
    settings: DeployerSettings,
    *,
    task_repo: TaskRepository | None,
    cloud_store: CloudStore | None,
    network_factory: NetworkControllerFactory | None,
    agent_factory: AgentControlFactory | None,
    script_runner: ScriptRunner | None,
) -> AppDependencies:
    """Build non-local dependencies; agent control and task storage are required."""
    from .clients import CloudStoreClient, NsxClientFactory, SubprocessScriptRunner

    missing = []
    if task_repo is None:
        missing.append("task_repo")
    if agent_factory is None:
        missing.append("agent_factory")
    if missing:
        raise ValueError(
            f"Non-local environment ({settings.environment}) requires "
            f"collaborators to be explicitly provided. Missing: {', '.join(missing)}"
        )

    return AppDependencies(
        task_repo=task_repo,  # type: ignore[arg-type]
        cloud_store=cloud_store or CloudStoreClient(base_url=settings.cloud_store_url),
        network_factory=network_factory
        or NsxClientFactory(verify_tls=settings.nsx_verify_tls),
        agent_factory=agent_factory,  # type: ignore[arg-type]
        script_runner=script_runner or SubprocessScriptRunner(),
    )


# ── Middleware ──────────────────────────────────────────────────────


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate or propagate X-Request-ID on every request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: DeployerSettings | None = None,
    *,
    task_repo: TaskRepository | None = None,
    cloud_store: CloudStore | None = None,
    network_factory: NetworkControllerFactory | None = None,
    agent_factory: AgentControlFactory | None = None,
    script_runner: ScriptRunner | None = None,
    sleep: Sleep = asyncio.sleep,
) -> FastAPI:
    """Create a configured deployer FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        task_repo..script_runner: Collaborator overrides. When None, local
            mode uses InMemory implementations; non-local mode builds the
            httpx/subprocess clients from settings.
        sleep: Delay used between network-controller state polls.

    Raises:
        ValueError: If settings validation fails, or a non-local
            environment is missing a required collaborator.
    """
    if settings is None:
        settings = DeployerSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Deployer settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if settings.is_local:
        defaults = _build_inmemory_deps()
        deps = AppDependencies(
            task_repo=task_repo or defaults.task_repo,
            cloud_store=cloud_store or defaults.cloud_store,
            network_factory=network_factory or defaults.network_factory,
            agent_factory=agent_factory or defaults.agent_factory,
            script_runner=script_runner or defaults.script_runner,
        )
    else:
        deps = _build_remote_deps(
            settings,
            task_repo=task_repo,
            cloud_store=cloud_store,
            network_factory=network_factory,
            agent_factory=agent_factory,
            script_runner=script_runner,
        )

    handlers = ProvisionHostHandlers(
        cloud_store=deps.cloud_store,
        network_factory=deps.network_factory,
        agent_factory=deps.agent_factory,
        script_runner=deps.script_runner,
        settings=settings,
        sleep=sleep,
    )
    service = ProvisionHostTaskService(
        task_repo=deps.task_repo, handlers=handlers, settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Deployer startup (environment=%s)", settings.environment)
        resumed = await service.resume_active()
        if resumed:
            logger.info("Resumed %d provision host tasks", len(resumed))
        yield
        await service.aclose()
        await deps.network_factory.aclose()
        logger.info("Deployer shutdown")

    app = FastAPI(
        title="Deployer",
        description="Provision-host task service",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.task_service = service

    app.add_middleware(RequestIDMiddleware)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    from .routes.tasks import create_tasks_router
    app.include_router(create_tasks_router(service))

    return app


def create_app_from_env() -> FastAPI:
    """Process entry point: structured logging plus settings from the environment."""
    configure_logging()
    return create_app(DeployerSettings.from_env())


# For uvicorn, use --factory flag:
#   uvicorn deployer.app.main:create_app_from_env --factory
