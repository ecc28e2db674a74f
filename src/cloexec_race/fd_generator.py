"""Background pipe generator that keeps fresh descriptors appearing during a fork.

The generator runs on its own OS thread, not as an asyncio task: the fork it
races against happens while the event loop is busy spawning the container, so
only a real thread can allocate descriptors at the same instant.

Lifecycle:
    start()        spawn the worker thread
    stop()         set the stop event and return immediately (no ack)
    wait_stopped() optional acknowledgment: join the worker
    aclose()       stop, join, close every generated descriptor exactly once

Descriptors are never closed by the worker itself; they stay open and
inspectable until aclose()/close_all() so the descriptor-table comparison
sees them.
"""

from __future__ import annotations

import asyncio
import os
import threading
from typing import TYPE_CHECKING

from cloexec_race import constants
from cloexec_race._logging import get_logger
from cloexec_race.models import CloexecMode
from cloexec_race.resource_cleanup import close_descriptors

if TYPE_CHECKING:
    from types import TracebackType

logger = get_logger(__name__)


def allocate_pipe(mode: CloexecMode) -> tuple[int, int]:
    """Create one anonymous pipe and return (read_fd, write_fd).

    DEFERRED creates the pipe without O_CLOEXEC and marks each end
    non-inheritable afterwards; a fork landing between the two steps copies
    the descriptors into the child.  ATOMIC lets the kernel set O_CLOEXEC at
    creation.
    """
    if mode is CloexecMode.ATOMIC:
        return os.pipe()

    r, w = os.pipe2(0)
    try:
        os.set_inheritable(r, False)
        os.set_inheritable(w, False)
    except OSError:
        os.close(r)
        os.close(w)
        raise
    return r, w


class DescriptorGenerator:
    """Allocates one pipe per tick on a worker thread until stopped.

    Ownership handoff: only the worker appends to the descriptor list; the
    owner reads or closes it after stop.  The lock makes snapshots taken
    before the worker acknowledges stop safe as well.
    """

    def __init__(
        self,
        *,
        tick_interval: float = constants.DEFAULT_TICK_INTERVAL_SECONDS,
        cloexec_mode: CloexecMode = CloexecMode.DEFERRED,
        context_id: str = "",
    ) -> None:
        if tick_interval <= 0:
            raise ValueError(f"tick_interval must be positive, got {tick_interval}")
        self._tick_interval = tick_interval
        self._cloexec_mode = cloexec_mode
        self._context_id = context_id

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._fds: list[int] = []
        self._thread: threading.Thread | None = None
        self._created_count = 0
        self._closed_count = 0
        self._closed = False
        self._error: OSError | None = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                r, w = allocate_pipe(self._cloexec_mode)
            except OSError as e:
                # EMFILE/ENFILE: keep what we have, stop allocating
                self._error = e
                logger.warning(
                    "Pipe allocation failed, generator stopping early",
                    extra={"context_id": self._context_id, "error": str(e), "allocated": len(self._fds)},
                )
                return
            with self._lock:
                self._fds.append(r)
                self._fds.append(w)
                self._created_count += 2
            self._stop_event.wait(self._tick_interval)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread.

        Raises:
            RuntimeError: Already started, or already closed.
        """
        if self._closed:
            raise RuntimeError("Generator already closed")
        if self._thread is not None:
            raise RuntimeError("Generator already started")
        name = constants.GENERATOR_THREAD_NAME
        if self._context_id:
            name = f"{name}-{self._context_id}"
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()
        logger.debug(
            "Descriptor generator started",
            extra={
                "context_id": self._context_id,
                "tick_interval": self._tick_interval,
                "cloexec_mode": self._cloexec_mode.value,
            },
        )

    def stop(self) -> None:
        """Signal the worker to stop. Returns without waiting; repeat calls are no-ops."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.debug("Descriptor generator stop signalled", extra={"context_id": self._context_id})

    def join(self, timeout: float | None = None) -> bool:
        """Block until the worker exits. Returns True if it is no longer running."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    async def wait_stopped(self, timeout: float | None = None) -> bool:
        """Wait for the worker to acknowledge stop without blocking the event loop.

        Returns:
            True if the worker exited, False if timeout elapsed first.
        """
        return await asyncio.to_thread(self.join, timeout)

    def close_all(self) -> int:
        """Stop, join, then close every generated descriptor exactly once.

        Returns:
            Number of descriptors closed by this call (0 when already closed).
        """
        self.stop()
        self.join()
        with self._lock:
            if self._closed:
                return 0
            self._closed = True
            fds = self._fds
            self._fds = []
        closed = close_descriptors(fds, context_id=self._context_id)
        self._closed_count += closed
        logger.debug(
            "Generated descriptors closed",
            extra={"context_id": self._context_id, "closed": closed, "owned": len(fds)},
        )
        return closed

    async def aclose(self) -> int:
        """Async variant of close_all(); the join runs off the event loop."""
        return await asyncio.to_thread(self.close_all)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def descriptors(self) -> list[int]:
        """Snapshot of descriptors currently owned (empty after close)."""
        with self._lock:
            return list(self._fds)

    @property
    def created_count(self) -> int:
        """Descriptors allocated over the generator's lifetime."""
        with self._lock:
            return self._created_count

    @property
    def closed_count(self) -> int:
        return self._closed_count

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def error(self) -> OSError | None:
        """Allocation error that ended the worker early, if any."""
        return self._error

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DescriptorGenerator:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()
