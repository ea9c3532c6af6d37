"""Deployer configuration settings.

DeployerSettings is the single configuration object accepted by create_app()
and ProvisionHostTaskService. It is a plain dataclass, not coupled to
os.environ; from_env() builds one from DEPLOYER_* variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class DeployerSettings:
    """Configuration for the deployer service.

    All fields have sensible defaults for local development.
    Non-local environments must supply a real cloud_store_url.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Cloud store ────────────────────────────────────────────────
    cloud_store_url: str = ""
    """Base URL of the document store holding host and deployment records."""

    # ── Install script ─────────────────────────────────────────────
    script_directory: Path = Path("/usr/lib/esxcloud/deployer/scripts")
    """Working directory the install script is run from."""

    script_log_directory: Path = Path("/var/log/esxcloud/deployer/script_logs")
    """Directory receiving one redirected output file per script run."""

    script_timeout_seconds: int = 600
    install_script_name: str = "esx-install-agent2"

    # ── Polling ────────────────────────────────────────────────────
    host_update_retry_count: int = 12
    """Retry budget of WAIT_FOR_HOST_UPDATES, independent of maximumPollCount."""

    network_max_poll_count: int = 60
    """Upper bound on fabric/transport node state polls per node."""

    # ── Task documents ─────────────────────────────────────────────
    task_expiration_seconds: int = 86400

    # ── Network manager ────────────────────────────────────────────
    nsx_verify_tls: bool = False
    esxi_port: int = 443

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local and not self.cloud_store_url:
            errors.append(f"{self.environment}: cloud_store_url is required")
        for name in (
            "script_timeout_seconds",
            "host_update_retry_count",
            "network_max_poll_count",
            "task_expiration_seconds",
            "esxi_port",
        ):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be positive")
        if not self.install_script_name.strip():
            errors.append("install_script_name is required")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> DeployerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct DeployerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            cloud_store_url=env.get("DEPLOYER_CLOUD_STORE_URL", ""),
            script_directory=Path(
                env.get("DEPLOYER_SCRIPT_DIRECTORY", str(defaults.script_directory))
            ),
            script_log_directory=Path(
                env.get(
                    "DEPLOYER_SCRIPT_LOG_DIRECTORY",
                    str(defaults.script_log_directory),
                )
            ),
            script_timeout_seconds=int(
                env.get("DEPLOYER_SCRIPT_TIMEOUT_SEC", defaults.script_timeout_seconds)
            ),
            install_script_name=env.get(
                "DEPLOYER_INSTALL_SCRIPT", defaults.install_script_name
            ),
            host_update_retry_count=int(
                env.get(
                    "DEPLOYER_HOST_UPDATE_RETRY_COUNT",
                    defaults.host_update_retry_count,
                )
            ),
            network_max_poll_count=int(
                env.get(
                    "DEPLOYER_NETWORK_MAX_POLL_COUNT",
                    defaults.network_max_poll_count,
                )
            ),
            task_expiration_seconds=int(
                env.get(
                    "DEPLOYER_TASK_EXPIRATION_SEC",
                    defaults.task_expiration_seconds,
                )
            ),
            nsx_verify_tls=env.get("DEPLOYER_NSX_VERIFY_TLS", "false").lower()
            in ("1", "true", "yes"),
            esxi_port=int(env.get("DEPLOYER_ESXI_PORT", defaults.esxi_port)),
        )
