"""cloexec-race: reproduce and detect fork/exec descriptor-inheritance races.

A supervising process starts a container while a worker thread keeps
allocating pipes.  If close-on-exec is not applied to those pipes atomically
with respect to the fork that launches the container's init, the forking
process inherits them.  Each attempt compares the FIFO inodes held by the
fork point with the ones held by this process; any overlap is a leak.

Quick Start:
    ```python
    from cloexec_race import RaceConfig, run_race

    report = await run_race(RaceConfig(container_name="precise", max_attempts=100))
    if report.race_detected:
        print(report.last_attempt.intersecting_inodes)
    ```

Custom collaborators (tests, other runtimes):
    ```python
    from cloexec_race import RaceAttemptOrchestrator, RetryLoop

    orchestrator = RaceAttemptOrchestrator(config, my_controller, my_introspector)
    report = await RetryLoop(config, orchestrator).run()
    ```

Requirements:
    - Linux (procfs, pipe2)
    - LXC userspace tools (lxc-start, lxc-info, lxc-stop)
    - Root, or sudo rights for `cat` and `lsof` with --introspector sudo
"""

from cloexec_race.config import RaceConfig
from cloexec_race.container import ContainerController, ContainerHandle, LxcController
from cloexec_race.exceptions import (
    ContainerError,
    ContainerStartError,
    ContainerStopError,
    IntrospectionError,
    RaceConfigError,
    RaceError,
)
from cloexec_race.fd_generator import DescriptorGenerator
from cloexec_race.introspection import ProcessIntrospector, ProcfsIntrospector, SudoIntrospector, create_introspector
from cloexec_race.models import AttemptOutcome, CloexecMode, IntrospectorKind, RaceAttempt, RaceReport
from cloexec_race.race import RaceAttemptOrchestrator, RetryLoop, fifo_intersection, run_race

__all__ = [
    "AttemptOutcome",
    "CloexecMode",
    "ContainerController",
    "ContainerError",
    "ContainerHandle",
    "ContainerStartError",
    "ContainerStopError",
    "DescriptorGenerator",
    "IntrospectionError",
    "IntrospectorKind",
    "LxcController",
    "ProcessIntrospector",
    "ProcfsIntrospector",
    "RaceAttempt",
    "RaceAttemptOrchestrator",
    "RaceConfig",
    "RaceConfigError",
    "RaceError",
    "RaceReport",
    "RetryLoop",
    "SudoIntrospector",
    "create_introspector",
    "fifo_intersection",
    "run_race",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("cloexec-race")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
