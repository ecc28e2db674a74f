"""Container lifecycle collaborator.

The race only needs four things from a container runtime: a handle, a start
call that forks/execs the init process, init's pid, and stop.  The
ContainerController protocol captures that; LxcController implements it on
top of the LXC command-line tools.

lxc-start is spawned with close_fds=False.  A C library calling fork/exec
directly closes nothing on the way; the only thing keeping a descriptor out
of the child is its close-on-exec flag, which is what the race exercises.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from cloexec_race import constants
from cloexec_race._logging import get_logger
from cloexec_race.exceptions import ContainerError, ContainerStartError, ContainerStopError
from cloexec_race.settings import Settings
from cloexec_race.subprocess_utils import CommandResult, run_command

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ContainerHandle:
    """Reference to a container known to a controller. Holds no OS resources."""

    name: str
    lxcpath: Path


@runtime_checkable
class ContainerController(Protocol):
    """Container lifecycle operations used by a race attempt."""

    def create(self, name: str, lxcpath: Path) -> ContainerHandle:
        """Return a handle for an existing container definition (does not start it)."""
        ...

    async def start(self, handle: ContainerHandle) -> None:
        """Start the container; returns once init has been forked/exec'd."""
        ...

    async def stop(self, handle: ContainerHandle) -> None: ...

    async def init_pid(self, handle: ContainerHandle) -> int:
        """Pid of the container's init process, as seen from the host."""
        ...

    def name(self, handle: ContainerHandle) -> str: ...


def _failure_detail(result: CommandResult) -> str:
    return result.stderr.strip() or result.stdout.strip() or f"exit {result.returncode}"


class LxcController:
    """ContainerController backed by lxc-start / lxc-info / lxc-stop."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()

    def create(self, name: str, lxcpath: Path) -> ContainerHandle:
        if not name or "/" in name or name in (".", ".."):
            raise ContainerError(f"Invalid container name: {name!r}", container_name=name)
        return ContainerHandle(name=name, lxcpath=Path(lxcpath))

    def name(self, handle: ContainerHandle) -> str:
        return handle.name

    def _base_args(self, binary: str, handle: ContainerHandle) -> tuple[str, ...]:
        return (binary, "-n", handle.name, "-P", str(handle.lxcpath))

    async def start(self, handle: ContainerHandle) -> None:
        argv = (*self._base_args(self._settings.lxc_start_bin, handle), "-d")
        logger.debug("Starting container", extra={"container": handle.name, "lxcpath": str(handle.lxcpath)})
        try:
            # No timeout: a hung runtime stalls the run rather than being misread as clean
            result = await run_command(argv, close_fds=False)
        except OSError as e:
            raise ContainerStartError(
                f"[{handle.name}] Can't start container: {e}",
                container_name=handle.name,
            ) from e
        if not result.ok:
            raise ContainerStartError(
                f"[{handle.name}] Can't start container: {_failure_detail(result)}",
                container_name=handle.name,
                context={"returncode": result.returncode},
            )

    async def init_pid(self, handle: ContainerHandle) -> int:
        argv = (*self._base_args(self._settings.lxc_info_bin, handle), "-p", "-H")
        try:
            result = await run_command(argv, timeout=self._settings.command_timeout_seconds)
        except (OSError, TimeoutError) as e:
            raise ContainerError(
                f"[{handle.name}] Can't query init pid: {e}",
                container_name=handle.name,
            ) from e
        if not result.ok:
            raise ContainerError(
                f"[{handle.name}] Can't query init pid: {_failure_detail(result)}",
                container_name=handle.name,
                context={"returncode": result.returncode},
            )
        raw = result.stdout.strip()
        try:
            pid = int(raw)
        except ValueError:
            raise ContainerError(
                f"[{handle.name}] Container has no init pid (not running?): {raw!r}",
                container_name=handle.name,
            ) from None
        if pid <= 0:
            raise ContainerError(f"[{handle.name}] Invalid init pid: {pid}", container_name=handle.name)
        return pid

    async def stop(self, handle: ContainerHandle) -> None:
        argv = (*self._base_args(self._settings.lxc_stop_bin, handle), "-k")
        try:
            result = await run_command(argv, timeout=self._settings.command_timeout_seconds)
        except (OSError, TimeoutError) as e:
            raise ContainerStopError(
                f"[{handle.name}] Can't stop container: {e}",
                container_name=handle.name,
            ) from e
        if not result.ok:
            raise ContainerStopError(
                f"[{handle.name}] Can't stop container: {_failure_detail(result)}",
                container_name=handle.name,
                context={"returncode": result.returncode},
            )


async def default_lxcpath(settings: Settings | None = None) -> Path:
    """Resolve the default container root search path.

    Order: CLOEXEC_RACE_DEFAULT_LXCPATH, `lxc-config lxc.lxcpath`, /var/lib/lxc.
    """
    settings = settings or Settings()
    if settings.default_lxcpath is not None:
        return settings.default_lxcpath

    try:
        result = await run_command(
            (settings.lxc_config_bin, "lxc.lxcpath"),
            timeout=settings.command_timeout_seconds,
        )
    except (OSError, TimeoutError) as e:
        logger.debug("lxc-config unavailable, using fallback lxcpath", extra={"error": str(e)})
        return constants.FALLBACK_LXCPATH

    value = result.stdout.strip()
    if result.ok and value:
        return Path(value)
    return constants.FALLBACK_LXCPATH
