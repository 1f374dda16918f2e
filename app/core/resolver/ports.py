# app/core/resolver/ports.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence


@dataclass(frozen=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class ToolRunner(Protocol):
    async def run(
        self,
        program: str,
        args: Sequence[str],
        *,
        timeout_seconds: float,
        max_output_bytes: int,
    ) -> ProcessResult:
        """
        Run an external tool and capture its output.

        Raises:
            ToolTimeoutError: the process exceeded timeout_seconds.
            ToolInvocationError: non-zero exit, missing binary or oversized output.
        """
        ...


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, expiry_seconds: int) -> None: ...
    async def exists(self, key: str) -> bool: ...
    async def delete(self, key: str) -> None: ...
    async def stats(self) -> Dict[str, Any]:
        """Return at least ``total_keys`` and ``memory_used``."""
        ...
    async def ping(self) -> bool: ...
    async def close(self) -> None: ...
