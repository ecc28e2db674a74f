"""Host OS detection.

Uses psutil's built-in OS detection constants for platform identification.
"""

from enum import Enum, auto
from functools import cache

import psutil

from cloexec_race.exceptions import RaceConfigError


class HostOS(Enum):
    """Host operating systems."""

    LINUX = auto()
    """Linux (procfs, pipe2, LXC)."""

    MACOS = auto()
    """macOS (no LXC; unsupported)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


def require_linux() -> None:
    """Raise RaceConfigError unless running on Linux.

    The race needs pipe2(2) without O_CLOEXEC, /proc/<pid>/fd and LXC, all
    Linux-only.
    """
    host = detect_host_os()
    if host is not HostOS.LINUX:
        raise RaceConfigError(
            f"cloexec-race requires Linux, detected {host.name.lower()}",
            context={"host_os": host.name},
        )
