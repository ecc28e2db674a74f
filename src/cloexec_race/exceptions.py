"""Exception hierarchy for cloexec-race.

All exceptions inherit from RaceError.

Hierarchy:
    RaceError (base)
    ├── IntrospectionError          ← process-state / descriptor-table query failed
    ├── ContainerError              ← container collaborator failed
    │   ├── ContainerStartError     ← start (fork/exec of init) failed
    │   └── ContainerStopError      ← stop failed
    └── RaceConfigError             ← unusable configuration or host

Every error is fatal for a run: the retry loop only repeats clean attempts.
An environment problem must not be mistaken for absence of the race.
"""

from __future__ import annotations

from typing import Any


class RaceError(Exception):
    """Base exception for all cloexec-race errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class IntrospectionError(RaceError):
    """Process introspection failed.

    Raised when the parent pid or the FIFO descriptor inodes of a process
    cannot be read: the helper could not run, the process exited, access
    was denied, or the output did not parse.

    Attributes:
        pid: Process whose state was being queried
    """

    def __init__(self, message: str, pid: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("pid", pid)
        super().__init__(message, ctx)
        self.pid = pid


class ContainerError(RaceError):
    """Container collaborator failed.

    Raised on create/start/stop/init-pid failures.  Indicates a broken
    environment rather than a clean attempt.

    Attributes:
        container_name: Name of the container involved
    """

    def __init__(self, message: str, container_name: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("container_name", container_name)
        super().__init__(message, ctx)
        self.container_name = container_name


class ContainerStartError(ContainerError):
    """Container start failed.

    The start call is where the fork/exec under test happens, so a failure
    here ends the run before any descriptors are compared.
    """


class ContainerStopError(ContainerError):
    """Container stop failed."""


class RaceConfigError(RaceError):
    """Configuration or host cannot run the race.

    Raised for an unknown introspector kind or a host without procfs/pipe2.
    """
