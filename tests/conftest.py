"""Shared pytest fixtures for cloexec-race tests.

The container runtime and privileged introspection are replaced by in-memory
fakes; the descriptor generator and procfs introspection run against the real
kernel (Linux only).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Generator
from pathlib import Path

import pytest

from cloexec_race._logging import LIBRARY_LOGGER_NAME
from cloexec_race.config import RaceConfig
from cloexec_race.container import ContainerHandle
from cloexec_race.exceptions import IntrospectionError
from cloexec_race.fd_generator import DescriptorGenerator
from cloexec_race.platform_utils import HostOS, detect_host_os

# ============================================================================
# Shared Skip Markers
# ============================================================================

# pipe2(2), /proc/<pid>/fd and psutil's Linux process model
skip_unless_linux = pytest.mark.skipif(
    detect_host_os() != HostOS.LINUX,
    reason="This test requires Linux (pipe2, procfs)",
)

# ============================================================================
# Fakes
# ============================================================================

FORK_PARENT_PID = 5000
INIT_PID = 5001
SELF_PID = 4000


class FakeController:
    """In-memory ContainerController. Records every call in order."""

    def __init__(
        self,
        *,
        init_pid: int = INIT_PID,
        start_error: Exception | None = None,
        init_pid_error: Exception | None = None,
        stop_error: Exception | None = None,
        on_start: Callable[[], Awaitable[None]] | None = None,
        on_init_pid: Callable[[], None] | None = None,
    ) -> None:
        self._init_pid = init_pid
        self._start_error = start_error
        self._init_pid_error = init_pid_error
        self._stop_error = stop_error
        self._on_start = on_start
        self._on_init_pid = on_init_pid
        self.calls: list[str] = []

    def create(self, name: str, lxcpath: Path) -> ContainerHandle:
        self.calls.append("create")
        return ContainerHandle(name=name, lxcpath=Path(lxcpath))

    async def start(self, handle: ContainerHandle) -> None:
        self.calls.append("start")
        if self._on_start is not None:
            await self._on_start()
        if self._start_error is not None:
            raise self._start_error

    async def stop(self, handle: ContainerHandle) -> None:
        self.calls.append("stop")
        if self._stop_error is not None:
            raise self._stop_error

    async def init_pid(self, handle: ContainerHandle) -> int:
        self.calls.append("init_pid")
        if self._on_init_pid is not None:
            self._on_init_pid()
        if self._init_pid_error is not None:
            raise self._init_pid_error
        return self._init_pid

    def name(self, handle: ContainerHandle) -> str:
        return handle.name


FifoSource = list[int] | Callable[[], list[int]]


class FakeIntrospector:
    """In-memory ProcessIntrospector.

    fifos values may be callables, evaluated on every query, so a test can
    change what a process holds between attempts.
    """

    def __init__(
        self,
        *,
        parents: dict[int, int] | None = None,
        fifos: dict[int, FifoSource] | None = None,
        parent_errors: dict[int, IntrospectionError] | None = None,
        fifo_errors: dict[int, IntrospectionError] | None = None,
    ) -> None:
        self.parents = parents if parents is not None else {INIT_PID: FORK_PARENT_PID}
        self.fifos = fifos or {}
        self.parent_errors = parent_errors or {}
        self.fifo_errors = fifo_errors or {}
        self.parent_queries: list[int] = []
        self.fifo_queries: list[int] = []

    async def parent_pid(self, pid: int) -> int:
        self.parent_queries.append(pid)
        if pid in self.parent_errors:
            raise self.parent_errors[pid]
        if pid not in self.parents:
            raise IntrospectionError(f"Process {pid} does not exist", pid=pid)
        return self.parents[pid]

    async def fifo_inodes(self, pid: int) -> list[int]:
        self.fifo_queries.append(pid)
        if pid in self.fifo_errors:
            raise self.fifo_errors[pid]
        source = self.fifos.get(pid, [])
        return list(source() if callable(source) else source)


class GeneratorRecorder:
    """Generator factory that keeps every generator it builds."""

    def __init__(self, tick_interval: float = 0.002) -> None:
        self.tick_interval = tick_interval
        self.generators: list[DescriptorGenerator] = []

    def __call__(self, context_id: str) -> DescriptorGenerator:
        generator = DescriptorGenerator(tick_interval=self.tick_interval, context_id=context_id)
        self.generators.append(generator)
        return generator


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def race_config() -> RaceConfig:
    """Bounded, fast-ticking config for orchestrator tests."""
    return RaceConfig(
        lxcpath=Path("/var/lib/lxc"),
        container_name="precise",
        max_attempts=5,
        tick_interval_seconds=0.002,
    )


@pytest.fixture
def generator_recorder() -> GeneratorRecorder:
    return GeneratorRecorder()


@pytest.fixture
def slow_start() -> Callable[[], Awaitable[None]]:
    """Container start hook that gives the generator several ticks."""

    async def _start() -> None:
        await asyncio.sleep(0.03)

    return _start


@pytest.fixture
def restore_library_logger() -> Generator[logging.Logger, None, None]:
    """Undo handler/level changes made by configure_logging()."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    handlers = list(lib_logger.handlers)
    level = lib_logger.level
    yield lib_logger
    for handler in list(lib_logger.handlers):
        if handler not in handlers:
            lib_logger.removeHandler(handler)
            handler.close()
    lib_logger.setLevel(level)
