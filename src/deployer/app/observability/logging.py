"""Structured logging for the deployer.

Handlers and clients log through ``logging.getLogger(__name__)``. Once
configure_logging() has run, every stdlib record goes through structlog's
ProcessorFormatter and picks up the task being processed (``task_id`` and
``sub_stage``) from context variables bound by the dispatcher. Values of
credential-looking keys are masked before rendering.

Usage::

    from deployer.app.observability import bind_task, configure_logging

    configure_logging()  # once, at process startup

    with bind_task(task.task_id, task.sub_stage):
        logger.info("Running install script")
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

task_id_ctx: ContextVar[str | None] = ContextVar("task_id", default=None)
sub_stage_ctx: ContextVar[str | None] = ContextVar("sub_stage", default=None)

REDACTED = "***"
_SECRET_MARKERS = ("password", "secret", "token")

_configured = False


@contextmanager
def bind_task(task_id: str, sub_stage: Any = None) -> Iterator[None]:
    """Attach a task (and its current sub-stage) to log records in scope."""
    stage_name = getattr(sub_stage, "value", sub_stage)
    task_token = task_id_ctx.set(task_id)
    stage_token = sub_stage_ctx.set(stage_name)
    try:
        yield
    finally:
        sub_stage_ctx.reset(stage_token)
        task_id_ctx.reset(task_token)


def _add_task_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    """Fill task_id / sub_stage from context unless the call site set them."""
    task_id = task_id_ctx.get()
    if task_id is not None:
        event_dict.setdefault("task_id", task_id)
    sub_stage = sub_stage_ctx.get()
    if sub_stage is not None:
        event_dict.setdefault("sub_stage", sub_stage)
    return event_dict


def _redact_secrets(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> dict:
    for key in event_dict:
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        _add_task_context,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Route stdlib and structlog output through one stdout handler.

    Args:
        level: Root log level name. Falls back to ``LOG_LEVEL``, then INFO.
        json_output: JSON lines when True, console rendering when False.
            Falls back to ``LOG_FORMAT`` (``json`` unless set otherwise).

    Only the first call has an effect.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Per-request client chatter.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def reset_logging_for_tests() -> None:
    global _configured
    _configured = False
    structlog.reset_defaults()
