# app/infra/process_runner.py
"""
Async external-tool runner.

Uses asyncio.create_subprocess_exec (argv list, never a shell), so waiting
for a slow extractor suspends only the calling coroutine and other
orchestrations keep progressing on the event loop.

stdout and stderr are read in chunks while the tool runs; the process is
killed as soon as the combined output passes the ceiling or the timeout
expires, whichever comes first.
"""
from __future__ import annotations

import asyncio
import os
from typing import Mapping, Optional, Sequence

from app.core.resolver.errors import (
    ToolInvocationError,
    ToolNotFoundError,
    ToolOutputLimitError,
    ToolTimeoutError,
    truncate,
)
from app.core.resolver.ports import ProcessResult
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

READ_CHUNK_BYTES = 64 * 1024


class ProcessRunner:
    """Runs a program with a hard timeout and an output ceiling."""

    def __init__(self, env: Mapping[str, str] | None = None):
        self._env = dict(env) if env is not None else None

    async def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        max_output_bytes: int,
    ) -> ProcessResult:
        argv = [program, *args]

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env if self._env is not None else os.environ.copy(),
            )
        except FileNotFoundError as exc:
            raise ToolNotFoundError(f"Command '{program}' is not installed or not on PATH") from exc
        except PermissionError as exc:
            raise ToolInvocationError(f"Permission denied executing '{program}'") from exc

        stdout = bytearray()
        stderr = bytearray()
        received = 0

        async def pump(stream: asyncio.StreamReader, sink: bytearray) -> None:
            nonlocal received
            while True:
                chunk = await stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    return
                sink.extend(chunk)
                received += len(chunk)
                if received > max_output_bytes:
                    raise ToolOutputLimitError(
                        f"Command '{program}' output exceeded {max_output_bytes} bytes"
                    )

        tasks = [
            asyncio.ensure_future(pump(proc.stdout, stdout)),
            asyncio.ensure_future(pump(proc.stderr, stderr)),
            asyncio.ensure_future(proc.wait()),
        ]
        done, pending = await asyncio.wait(
            tasks, timeout=timeout_seconds, return_when=asyncio.FIRST_EXCEPTION
        )
        failure: Optional[BaseException] = next(
            (t.exception() for t in done if t.exception() is not None), None
        )

        if failure is not None or pending:
            await self._kill(proc, pending)
            if failure is not None:
                logger.warning(f"{program} killed: {failure}")
                raise failure
            logger.warning(f"{program} killed after {timeout_seconds:g}s timeout")
            raise ToolTimeoutError(
                f"Command '{program}' timed out after {timeout_seconds:g}s (timeout)"
            )

        stdout_str = stdout.decode("utf-8", errors="replace")
        stderr_str = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            raise ToolInvocationError(
                f"Command '{program}' failed with exit code {proc.returncode}: "
                f"{truncate(stderr_str.strip(), 300) or 'no stderr'}",
                stderr=stderr_str,
                exit_code=proc.returncode,
            )

        return ProcessResult(stdout=stdout_str, stderr=stderr_str, exit_code=proc.returncode)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process, pending) -> None:
        for task in pending:
            task.cancel()
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        await asyncio.gather(*pending, return_exceptions=True)
