"""Data models for cloexec-race."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AttemptOutcome(str, Enum):
    """Classification of a single race attempt."""

    CLEAN = "clean"
    RACE_DETECTED = "race-detected"


class CloexecMode(str, Enum):
    """How the generator marks new pipe ends close-on-exec."""

    DEFERRED = "deferred"
    """pipe2(0) then set CLOEXEC per end: leaves a window before the flag is set."""

    ATOMIC = "atomic"
    """os.pipe(): CLOEXEC applied by the kernel at creation (control experiment)."""


class IntrospectorKind(str, Enum):
    """Available process introspection transports."""

    PROCFS = "procfs"
    SUDO = "sudo"


class RaceAttempt(BaseModel):
    """Result of one attempt at reproducing the race."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1, description="1-based attempt number")
    outcome: AttemptOutcome
    intersecting_inodes: tuple[int, ...] = Field(
        default=(), description="FIFO inodes held by both the fork parent and this process (sorted)"
    )
    init_pid: int | None = Field(default=None, description="Container init pid")
    fork_parent_pid: int | None = Field(default=None, description="Parent of init, the process that forked")
    generated_descriptors: int = Field(default=0, ge=0, description="Descriptors created by the generator")
    duration_ms: int = Field(default=0, ge=0, description="Wall time of the attempt")

    @property
    def race_detected(self) -> bool:
        return self.outcome is AttemptOutcome.RACE_DETECTED


class RaceReport(BaseModel):
    """Final verdict of a run."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(ge=0, description="Attempts performed")
    race_detected: bool
    last_attempt: RaceAttempt | None = None
