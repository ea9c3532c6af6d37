"""Local script execution with output redirected to a log file."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from ..provisioning.errors import ScriptTimeoutError

logger = logging.getLogger(__name__)


class SubprocessScriptRunner:
    """ScriptRunner backed by ``asyncio.create_subprocess_exec``.

    stdout and stderr are both written to ``output_path``. A script that
    outlives ``timeout_seconds`` is killed and ScriptTimeoutError raised.
    """

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        timeout_seconds: float,
        output_path: Path,
    ) -> int | None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("wb") as output:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdout=output,
                stderr=asyncio.subprocess.STDOUT,
            )
            try:
                return await asyncio.wait_for(proc.wait(), timeout_seconds)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.error(
                    "Script %s timed out after %ss", command[0], timeout_seconds,
                )
                raise ScriptTimeoutError(
                    f"{command[0]} did not finish within {timeout_seconds} seconds"
                ) from None
