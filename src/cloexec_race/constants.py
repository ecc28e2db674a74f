"""Constants for cloexec-race configuration and limits."""

from pathlib import Path
from typing import Final

# ============================================================================
# Container defaults
# ============================================================================

DEFAULT_CONTAINER_NAME: Final[str] = "precise"
"""Container started on every attempt when --container-name is not given."""

FALLBACK_LXCPATH: Final[Path] = Path("/var/lib/lxc")
"""Container root search path used when `lxc-config lxc.lxcpath` is unavailable."""

# ============================================================================
# Descriptor generator
# ============================================================================

DEFAULT_TICK_INTERVAL_SECONDS: Final[float] = 0.01
"""Interval between pipe allocations (one pipe = two descriptors per tick)."""

MAX_TICK_INTERVAL_SECONDS: Final[float] = 1.0
"""Upper bound for the tick interval; slower ticks leave the race window empty."""

DEFAULT_STOP_ACK_TIMEOUT_SECONDS: Final[float] = 5.0
"""How long the stop handshake waits for the generator thread to acknowledge."""

GENERATOR_THREAD_NAME: Final[str] = "fd-generator"

# ============================================================================
# Helper commands
# ============================================================================

DEFAULT_COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0
"""Timeout for introspection and lxc-info/lxc-stop helpers (never lxc-start)."""

# ============================================================================
# Exit codes
# ============================================================================

EXIT_RACE_DETECTED: Final[int] = 0
EXIT_FAILURE: Final[int] = 1
