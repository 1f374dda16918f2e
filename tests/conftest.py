"""Pytest configuration and fixtures"""
import random
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.resolver.errors import ToolInvocationError  # noqa: E402
from app.core.resolver.ports import ProcessResult  # noqa: E402
from app.infra.kv_store import InMemoryKeyValueStore  # noqa: E402


class FakeToolRunner:
    """
    Scripted ToolRunner.

    ``responses`` maps a program name to a list of stdout strings or
    exceptions, consumed one per call. Exhausted programs return empty
    stdout.
    """

    def __init__(self, responses: dict | None = None):
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    async def run(self, program, args, *, timeout_seconds, max_output_bytes):
        self.calls.append((program, tuple(args)))
        queue = self.responses.get(program) or []
        item = queue.pop(0) if queue else ""
        if isinstance(item, BaseException):
            raise item
        return ProcessResult(stdout=item, stderr="", exit_code=0)


class RecordingSleep:
    """Async sleep replacement that records requested delays"""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ManualClock:
    """Deterministic clock for backoff and expiry tests"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def tool_failure(message: str, stderr: str = "") -> ToolInvocationError:
    return ToolInvocationError(message, stderr=stderr, exit_code=1)


@pytest.fixture
def fake_runner():
    return FakeToolRunner()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def rng():
    """Seeded RNG so user-agent choice is reproducible"""
    return random.Random(42)


@pytest.fixture
def post_url():
    return "https://www.instagram.com/p/ABC123/"
