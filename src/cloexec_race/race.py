"""Race construction and detection.

One attempt:

    1. get a container handle (not started)
    2. start the descriptor generator (worker thread)
    3. start the container -- the fork/exec of init under test
    4. signal the generator to stop (fire-and-forget unless stop_handshake)
    5. resolve init's parent, the process that actually forked:

           supervisor (this process, pid 10676)
            └─ lxc monitor (fork point, pid 10710)    <- parent_pid(init_pid)
                └─ /sbin/init (pid 10711)              <- controller.init_pid()

    6. compare the fork point's FIFO inodes with our own
    7. any shared inode is a descriptor that crossed the fork without CLOEXEC

Teardown (stop container, close every generated descriptor) runs on every exit
path once the generator has been started.

The retry loop repeats clean attempts until a race is seen, an attempt raises,
or the configured attempt bound is reached.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, stop_never, wait_fixed

from cloexec_race._logging import get_logger
from cloexec_race.config import RaceConfig
from cloexec_race.container import ContainerController, LxcController
from cloexec_race.exceptions import IntrospectionError
from cloexec_race.fd_generator import DescriptorGenerator
from cloexec_race.introspection import ProcessIntrospector, create_introspector
from cloexec_race.models import AttemptOutcome, RaceAttempt, RaceReport
from cloexec_race.platform_utils import require_linux
from cloexec_race.resource_cleanup import stop_container_quietly
from cloexec_race.settings import Settings

logger = get_logger(__name__)

T = TypeVar("T")

GeneratorFactory = Callable[[str], DescriptorGenerator]


def fifo_intersection(fork_parent_inodes: Iterable[int], self_inodes: Iterable[int]) -> frozenset[int]:
    """Inodes present in both collections. Order and duplicates are irrelevant."""
    return frozenset(fork_parent_inodes) & frozenset(self_inodes)


async def _introspect(what: str, query: Awaitable[T]) -> T:
    """Await an introspection query, prefixing failures with what was being looked up."""
    try:
        return await query
    except IntrospectionError as e:
        raise IntrospectionError(f"Can't get {what}: {e.message}", pid=e.pid, context=dict(e.context)) from e


class RaceAttemptOrchestrator:
    """Runs single race attempts against one container."""

    def __init__(
        self,
        config: RaceConfig,
        controller: ContainerController,
        introspector: ProcessIntrospector,
        *,
        generator_factory: GeneratorFactory | None = None,
        self_pid: int | None = None,
    ) -> None:
        self._config = config
        self._controller = controller
        self._introspector = introspector
        self._generator_factory = generator_factory or self._default_generator
        self._self_pid = self_pid

    def _default_generator(self, context_id: str) -> DescriptorGenerator:
        return DescriptorGenerator(
            tick_interval=self._config.tick_interval_seconds,
            cloexec_mode=self._config.cloexec_mode,
            context_id=context_id,
        )

    async def attempt(self, sequence: int) -> RaceAttempt:
        """Run one attempt.

        Args:
            sequence: 1-based attempt number

        Returns:
            RaceAttempt classified CLEAN or RACE_DETECTED

        Raises:
            ContainerError: Container could not be created/started/queried
            IntrospectionError: Parent pid or descriptor table unreadable, or the
                fork point is this process
        """
        config = self._config
        controller = self._controller
        context_id = f"attempt-{sequence}"
        self_pid = self._self_pid if self._self_pid is not None else os.getpid()
        started_at = time.monotonic()

        logger.info(
            "Attempt %d: starting container %r from pid %d",
            sequence,
            config.container_name,
            self_pid,
            extra={"context_id": context_id, "lxcpath": str(config.lxcpath)},
        )

        handle = controller.create(config.container_name, config.lxcpath)
        generator = self._generator_factory(context_id)
        container_started = False

        try:
            generator.start()
            try:
                await controller.start(handle)
                container_started = True
            except asyncio.CancelledError:
                # init may already be forked when the cancel lands
                container_started = True
                raise
            finally:
                generator.stop()

            if config.stop_handshake and not await generator.wait_stopped(config.stop_ack_timeout_seconds):
                logger.warning(
                    "Generator did not acknowledge stop",
                    extra={"context_id": context_id, "timeout": config.stop_ack_timeout_seconds},
                )

            init_pid = await controller.init_pid(handle)
            fork_parent_pid = await _introspect(
                "container init's parent pid",
                self._introspector.parent_pid(init_pid),
            )
            if fork_parent_pid == self_pid:
                # Both inventories would be the same table: every FIFO would intersect
                raise IntrospectionError(
                    f"Container init's parent is this process (pid {self_pid}); "
                    "the fork point must be a separate process",
                    pid=init_pid,
                    context={"fork_parent_pid": fork_parent_pid},
                )
            logger.info(
                "Started %s (init pid: %d; parent pid: %d)",
                controller.name(handle),
                init_pid,
                fork_parent_pid,
                extra={"context_id": context_id},
            )

            fork_parent_inodes = await _introspect(
                "fork parent's FIFO inodes",
                self._introspector.fifo_inodes(fork_parent_pid),
            )
            self_inodes = await _introspect(
                "own FIFO inodes",
                self._introspector.fifo_inodes(self_pid),
            )
            logger.debug(
                "FIFO inventories collected",
                extra={
                    "context_id": context_id,
                    "fork_parent_fifos": len(fork_parent_inodes),
                    "self_fifos": len(self_inodes),
                },
            )
            shared = fifo_intersection(fork_parent_inodes, self_inodes)

        finally:
            if container_started:
                await stop_container_quietly(controller, handle, context_id)
            await generator.aclose()

        outcome = AttemptOutcome.RACE_DETECTED if shared else AttemptOutcome.CLEAN
        result = RaceAttempt(
            sequence=sequence,
            outcome=outcome,
            intersecting_inodes=tuple(sorted(shared)),
            init_pid=init_pid,
            fork_parent_pid=fork_parent_pid,
            generated_descriptors=generator.created_count,
            duration_ms=int((time.monotonic() - started_at) * 1000),
        )

        if result.race_detected:
            logger.warning(
                "Found the following intersecting inodes: %s",
                list(result.intersecting_inodes),
                extra={"context_id": context_id, "fork_parent_pid": fork_parent_pid},
            )
        else:
            logger.info(
                "Attempt %d clean (%d descriptors generated)",
                sequence,
                result.generated_descriptors,
                extra={"context_id": context_id, "duration_ms": result.duration_ms},
            )
        return result


class RetryLoop:
    """Repeats attempts until a race is detected.

    Errors are never retried: they propagate out of run() on first occurrence.
    """

    def __init__(self, config: RaceConfig, orchestrator: RaceAttemptOrchestrator) -> None:
        self._config = config
        self._orchestrator = orchestrator

    async def run(self) -> RaceReport:
        """Attempt the race repeatedly.

        Returns:
            RaceReport; race_detected is False only when max_attempts ran out.

        Raises:
            RaceError: First error raised by any attempt.
        """
        config = self._config
        attempts = 0
        last: RaceAttempt | None = None

        async def attempt_once() -> RaceAttempt:
            nonlocal attempts, last
            attempts += 1
            last = await self._orchestrator.attempt(attempts)
            return last

        def give_up(retry_state: RetryCallState) -> RaceAttempt:
            logger.info("No race after %d attempts", attempts)
            return retry_state.outcome.result()  # type: ignore[union-attr]

        retrying = AsyncRetrying(
            retry=retry_if_result(lambda a: not a.race_detected),
            stop=stop_after_attempt(config.max_attempts) if config.max_attempts else stop_never,
            wait=wait_fixed(config.attempt_delay_seconds),
            retry_error_callback=give_up,
        )
        await retrying(attempt_once)

        return RaceReport(
            attempts=attempts,
            race_detected=last is not None and last.race_detected,
            last_attempt=last,
        )


async def run_race(
    config: RaceConfig,
    *,
    controller: ContainerController | None = None,
    introspector: ProcessIntrospector | None = None,
    settings: Settings | None = None,
) -> RaceReport:
    """Build the default collaborators and run the retry loop.

    Raises:
        RaceConfigError: Not on Linux, or unknown introspector
        RaceError: First error raised by any attempt
    """
    require_linux()
    settings = settings or Settings()
    orchestrator = RaceAttemptOrchestrator(
        config,
        controller or LxcController(settings),
        introspector or create_introspector(config.introspector, settings),
    )
    return await RetryLoop(config, orchestrator).run()

