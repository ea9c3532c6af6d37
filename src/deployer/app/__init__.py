"""Deployer FastAPI application."""

from .main import create_app
from .settings import DeployerSettings

__all__ = ["create_app", "DeployerSettings"]
