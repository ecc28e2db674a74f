"""Subprocess helpers for introspection and LXC tools.

- run_command: run a helper to completion, draining stdout/stderr together
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cloexec_race._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Completed helper process."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _kill_and_reap(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


async def run_command(
    argv: Sequence[str],
    *,
    timeout: float | None = None,
    close_fds: bool = True,
) -> CommandResult:
    """Run a command and capture its output.

    communicate() reads stdout and stderr concurrently, so a chatty helper
    cannot deadlock on a full pipe.

    Args:
        argv: Program and arguments (no shell).
        timeout: Seconds before the helper is killed. None waits forever.
        close_fds: Passed to the spawn. False lets the child inherit every
            descriptor not marked close-on-exec.

    Returns:
        CommandResult with decoded output.

    Raises:
        FileNotFoundError: The program does not exist.
        PermissionError: The program is not executable.
        TimeoutError: The helper did not finish within timeout (it is killed).

    Cancellation also kills and reaps the helper before re-raising.
    """
    argv = tuple(argv)
    logger.debug("Running helper", extra={"argv": argv, "close_fds": close_fds})

    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        close_fds=close_fds,
    )
    try:
        async with asyncio.timeout(timeout):
            stdout, stderr = await proc.communicate()
    except TimeoutError:
        await _kill_and_reap(proc)
        logger.warning("Helper timed out", extra={"argv": argv, "timeout": timeout})
        raise TimeoutError(f"{argv[0]} did not finish within {timeout}s") from None
    except BaseException:
        # CancelledError too: the helper must not outlive the caller (Ctrl-C during lxc-start)
        logger.info("Helper interrupted, killing it", extra={"argv": argv, "pid": proc.pid})
        await _kill_and_reap(proc)
        raise

    result = CommandResult(
        argv=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    logger.debug("Helper finished", extra={"argv": argv, "returncode": result.returncode})
    return result
