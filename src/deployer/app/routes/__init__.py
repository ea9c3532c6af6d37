"""HTTP route modules for the deployer."""

from .tasks import create_tasks_router

__all__ = ['create_tasks_router']
