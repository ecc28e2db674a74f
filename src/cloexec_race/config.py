"""Run configuration for cloexec-race.

RaceConfig is built once at startup (by the CLI or by library callers) and
passed explicitly to the orchestrator and the retry loop.

Example:
    ```python
    from cloexec_race import RaceConfig, run_race

    config = RaceConfig(container_name="precise", max_attempts=50)
    report = await run_race(config)
    ```
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from cloexec_race import constants
from cloexec_race.models import CloexecMode, IntrospectorKind


class RaceConfig(BaseModel):
    """Configuration for a race run.

    Attributes:
        lxcpath: Container root search path (lxc -P).
        container_name: Container to start on every attempt.
        max_attempts: Stop after this many clean attempts. None retries forever.
        tick_interval_seconds: Delay between pipe allocations in the generator.
        cloexec_mode: How generated pipes get CLOEXEC (deferred widens the window).
        stop_handshake: Wait for the generator to acknowledge stop before
            reading descriptor tables. Off by default: the looser ordering
            keeps descriptors being allocated while they are inspected.
        stop_ack_timeout_seconds: Bound on the handshake wait.
        introspector: Transport for parent-pid and FIFO-inode queries.
        attempt_delay_seconds: Pause between clean attempts.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    lxcpath: Path = Field(
        default=constants.FALLBACK_LXCPATH,
        description="Container root search path",
    )
    container_name: str = Field(
        default=constants.DEFAULT_CONTAINER_NAME,
        min_length=1,
        description="Container to start on every attempt",
    )

    max_attempts: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on attempts (None = unbounded)",
    )
    attempt_delay_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Pause between clean attempts",
    )

    tick_interval_seconds: float = Field(
        default=constants.DEFAULT_TICK_INTERVAL_SECONDS,
        gt=0.0,
        le=constants.MAX_TICK_INTERVAL_SECONDS,
        description="Delay between pipe allocations",
    )
    cloexec_mode: CloexecMode = Field(
        default=CloexecMode.DEFERRED,
        description="How generated pipe ends get close-on-exec",
    )
    stop_handshake: bool = Field(
        default=False,
        description="Wait for the generator to acknowledge stop",
    )
    stop_ack_timeout_seconds: float = Field(
        default=constants.DEFAULT_STOP_ACK_TIMEOUT_SECONDS,
        gt=0.0,
        description="Bound on the stop handshake wait",
    )

    introspector: IntrospectorKind = Field(
        default=IntrospectorKind.PROCFS,
        description="Process introspection transport",
    )
