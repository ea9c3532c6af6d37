"""Observability for the deployer: structured logging with task correlation.

Quick start::

    from deployer.app.observability import configure_logging

    configure_logging()
"""

from .logging import (
    bind_task,
    configure_logging,
    sub_stage_ctx,
    task_id_ctx,
)

__all__ = [
    "bind_task",
    "configure_logging",
    "sub_stage_ctx",
    "task_id_ctx",
]
