"""Process introspection: parent pids and FIFO descriptor inodes.

Two queries drive leak detection:

- parent_pid(pid): the container's init pid is one level below the process
  that actually forked, so the fork point is found by asking for init's parent.
- fifo_inodes(pid): the kernel inodes of every FIFO (pipe) descriptor the
  process holds. Inodes are compared for identity only.

Both are re-read on every call; process trees and descriptor tables change
constantly, so nothing is cached.

Transports:
    ProcfsIntrospector  - psutil + /proc/<pid>/fd, in-process (default)
    SudoIntrospector    - `sudo -n cat /proc/<pid>/status` and `sudo -n lsof`,
                          for fork parents owned by another user
"""

from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import psutil

from cloexec_race._logging import get_logger
from cloexec_race.exceptions import IntrospectionError, RaceConfigError
from cloexec_race.models import IntrospectorKind
from cloexec_race.settings import Settings
from cloexec_race.subprocess_utils import run_command

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cloexec_race.subprocess_utils import CommandResult

logger = get_logger(__name__)


@runtime_checkable
class ProcessIntrospector(Protocol):
    """Capability to inspect another process's parent and descriptor table."""

    async def parent_pid(self, pid: int) -> int:
        """Return the parent pid recorded for pid.

        Raises:
            IntrospectionError: Query failed, process gone, or value unparseable.
        """
        ...

    async def fifo_inodes(self, pid: int) -> list[int]:
        """Return inodes of pid's FIFO descriptors, in descriptor order.

        An empty list means the process holds no FIFOs.

        Raises:
            IntrospectionError: Query failed or process gone.
        """
        ...


def _check_pid(pid: int) -> None:
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        raise IntrospectionError(f"Invalid pid: {pid!r}", pid=pid if isinstance(pid, int) else -1)


def _positive_int(raw: str, *, pid: int, what: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise IntrospectionError(f"Unparseable {what} for pid {pid}: {raw.strip()!r}", pid=pid) from None
    if value <= 0:
        raise IntrospectionError(f"Non-positive {what} for pid {pid}: {value}", pid=pid)
    return value


# ============================================================================
# Output parsers
# ============================================================================


def parse_status_ppid(status_text: str, pid: int) -> int:
    """Extract the PPid field from /proc/<pid>/status contents.

    Raises:
        IntrospectionError: No PPid line, or its value is not a positive integer.
    """
    for line in status_text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "PPid":
            return _positive_int(value, pid=pid, what="parent pid")
    raise IntrospectionError(f"No PPid field in status of pid {pid}", pid=pid)


def parse_lsof_fifo_inodes(output: str, pid: int) -> list[int]:
    """Extract FIFO inodes from `lsof -F fti` field output.

    Field output emits one record per line, keyed by its first character:
    ``p`` starts a process set, ``f`` starts a file set, ``t`` is the file
    type and ``i`` the inode.  A file set is a FIFO when its type is ``FIFO``.

    Raises:
        IntrospectionError: An inode of a FIFO set is not a positive integer.
    """
    inodes: list[int] = []
    file_type: str | None = None
    inode: str | None = None

    def flush() -> None:
        if file_type == "FIFO" and inode is not None:
            inodes.append(_positive_int(inode, pid=pid, what="FIFO inode"))

    for line in output.splitlines():
        if not line:
            continue
        tag, value = line[0], line[1:]
        if tag in ("p", "f"):
            flush()
            file_type = None
            inode = None
        elif tag == "t":
            file_type = value
        elif tag == "i":
            inode = value
    flush()
    return inodes


# ============================================================================
# procfs transport
# ============================================================================


class ProcfsIntrospector:
    """Reads process state directly from procfs.

    Parent pids come from psutil (/proc/<pid>/stat); descriptors are found by
    stat()ing each /proc/<pid>/fd entry, which resolves to the open file
    itself.  Needs ptrace-read access to the target, so processes owned by
    other users require running as root (or SudoIntrospector).
    """

    def __init__(self, procfs_root: Path = Path("/proc")) -> None:
        self._procfs_root = procfs_root

    async def parent_pid(self, pid: int) -> int:
        _check_pid(pid)
        try:
            ppid = await asyncio.to_thread(lambda: psutil.Process(pid).ppid())
        except psutil.NoSuchProcess as e:
            raise IntrospectionError(f"Process {pid} does not exist", pid=pid) from e
        except psutil.AccessDenied as e:
            raise IntrospectionError(f"Access denied reading parent of pid {pid}", pid=pid) from e
        if ppid <= 0:
            raise IntrospectionError(f"Process {pid} has no parent (ppid={ppid})", pid=pid)
        return ppid

    async def fifo_inodes(self, pid: int) -> list[int]:
        _check_pid(pid)
        # One thread hop for the whole scan; tables can hold thousands of fds
        return await asyncio.to_thread(self._scan_fifo_inodes, pid)

    def _scan_fifo_inodes(self, pid: int) -> list[int]:
        fd_dir = self._procfs_root / str(pid) / "fd"
        try:
            names = os.listdir(fd_dir)
        except FileNotFoundError as e:
            raise IntrospectionError(f"Process {pid} does not exist", pid=pid) from e
        except PermissionError as e:
            raise IntrospectionError(f"Access denied listing descriptors of pid {pid}", pid=pid) from e
        except OSError as e:
            raise IntrospectionError(f"Cannot list descriptors of pid {pid}: {e}", pid=pid) from e

        inodes: list[int] = []
        for name in sorted(names, key=lambda n: int(n) if n.isdigit() else -1):
            try:
                st = os.stat(fd_dir / name)
            except FileNotFoundError:
                continue  # closed while scanning
            except PermissionError as e:
                raise IntrospectionError(f"Access denied reading fd {name} of pid {pid}", pid=pid) from e
            except OSError as e:
                logger.debug("Skipping unreadable descriptor", extra={"pid": pid, "fd": name, "error": str(e)})
                continue
            if stat.S_ISFIFO(st.st_mode):
                inodes.append(st.st_ino)
        return inodes


# ============================================================================
# sudo transport
# ============================================================================


class SudoIntrospector:
    """Queries process state through privileged helper commands.

    Uses ``sudo -n`` (never prompts): a missing sudoers rule fails the query
    instead of hanging the run on a password prompt.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or Settings()

    async def _run(self, argv: Sequence[str], pid: int) -> CommandResult:
        s = self._settings
        full = (s.sudo_bin, "-n", *argv)
        try:
            return await run_command(full, timeout=s.command_timeout_seconds)
        except (FileNotFoundError, PermissionError) as e:
            raise IntrospectionError(f"Cannot execute {full[0]}: {e}", pid=pid) from e
        except TimeoutError as e:
            raise IntrospectionError(str(e), pid=pid) from e

    async def parent_pid(self, pid: int) -> int:
        _check_pid(pid)
        status_path = self._settings.procfs_root / str(pid) / "status"
        result = await self._run((self._settings.cat_bin, str(status_path)), pid)
        if not result.ok:
            raise IntrospectionError(
                f"Cannot read status of pid {pid}: {result.stderr.strip() or f'exit {result.returncode}'}",
                pid=pid,
                context={"returncode": result.returncode},
            )
        return parse_status_ppid(result.stdout, pid)

    async def fifo_inodes(self, pid: int) -> list[int]:
        _check_pid(pid)
        result = await self._run((self._settings.lsof_bin, "-nP", "-a", "-p", str(pid), "-F", "fti"), pid)
        # lsof exits 1 on warnings too; a missing process set means the pid is gone
        if result.returncode != 0 and not result.stdout.startswith("p"):
            raise IntrospectionError(
                f"lsof found no process {pid}: {result.stderr.strip() or f'exit {result.returncode}'}",
                pid=pid,
                context={"returncode": result.returncode},
            )
        return parse_lsof_fifo_inodes(result.stdout, pid)


def create_introspector(
    kind: IntrospectorKind | str,
    settings: Settings | None = None,
) -> ProcessIntrospector:
    """Build the introspector named by kind.

    Raises:
        RaceConfigError: Unknown kind.
    """
    settings = settings or Settings()
    try:
        kind = IntrospectorKind(kind)
    except ValueError:
        raise RaceConfigError(f"Unknown introspector: {kind!r}", context={"introspector": kind}) from None

    if kind is IntrospectorKind.SUDO:
        return SudoIntrospector(settings)
    return ProcfsIntrospector(settings.procfs_root)
