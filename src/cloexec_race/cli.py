"""Command-line interface for cloexec-race.

Usage:
    cloexec-race --container-name precise
    cloexec-race --lxcpath /var/lib/lxc --container-name trusty --max-attempts 500
    sudo cloexec-race -v --stop-handshake
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from cloexec_race import RaceConfig, RaceError, RaceReport, __version__, run_race
from cloexec_race._logging import configure_logging
from cloexec_race.constants import DEFAULT_CONTAINER_NAME, EXIT_FAILURE, EXIT_RACE_DETECTED
from cloexec_race.container import default_lxcpath
from cloexec_race.models import CloexecMode, IntrospectorKind
from cloexec_race.settings import Settings


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_report(report: RaceReport) -> str:
    """Human-readable verdict for a finished run."""
    if report.race_detected and report.last_attempt is not None:
        inodes = ", ".join(str(i) for i in report.last_attempt.intersecting_inodes)
        return (
            f"*** inode race detected after {report.attempts} attempts\n"
            f"Intersecting inodes: [{inodes}]"
        )
    return f"No race detected after {report.attempts} attempts"


async def run(config: RaceConfig, settings: Settings) -> int:
    """Run the retry loop and return the process exit code."""
    try:
        report = await run_race(config, settings=settings)
    except RaceError as e:
        click.echo(
            format_error(
                "Error whilst attempting to reproduce the race",
                e.message,
                [
                    "Check that the container exists: lxc-ls -P <lxcpath>",
                    "Run as root, or use --introspector sudo with passwordless sudo for cat and lsof",
                ],
            ),
            err=True,
        )
        return EXIT_FAILURE

    click.echo(format_report(report))
    return EXIT_RACE_DETECTED if report.race_detected else EXIT_FAILURE


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--lxcpath",
    type=click.Path(file_okay=False, path_type=Path),
    help="The path to the container roots (default: lxc-config lxc.lxcpath)",
)
@click.option("--container-name", default=DEFAULT_CONTAINER_NAME, show_default=True, help="The container to start up")
@click.option("-n", "--max-attempts", type=click.IntRange(min=1), help="Give up after N clean attempts (default: never)")
@click.option(
    "--introspector",
    type=click.Choice([k.value for k in IntrospectorKind], case_sensitive=False),
    default=IntrospectorKind.PROCFS.value,
    show_default=True,
    help="How to read other processes' state",
)
@click.option("--tick-ms", default=10.0, show_default=True, help="Milliseconds between pipe allocations")
@click.option(
    "--cloexec",
    "cloexec_mode",
    type=click.Choice([m.value for m in CloexecMode], case_sensitive=False),
    default=CloexecMode.DEFERRED.value,
    show_default=True,
    help="How generated pipes get close-on-exec",
)
@click.option("--stop-handshake", is_flag=True, help="Wait for the generator to stop before reading descriptors")
@click.option("--attempt-delay", default=0.0, show_default=True, help="Seconds to pause between clean attempts")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only print the verdict and errors")
@click.version_option(__version__, "-V", "--version", prog_name="cloexec-race")
def main(
    lxcpath: Path | None,
    container_name: str,
    max_attempts: int | None,
    introspector: str,
    tick_ms: float,
    cloexec_mode: str,
    stop_handshake: bool,
    attempt_delay: float,
    verbose: bool,
    quiet: bool,
) -> NoReturn:
    """Start a container repeatedly until a pipe leaks across its fork/exec.

    Exits 0 once a race is reproduced, 1 on any error or when
    --max-attempts runs out.
    """
    configure_logging(level=logging.DEBUG if verbose else logging.INFO, quiet=quiet)
    settings = Settings()

    if lxcpath is None:
        lxcpath = asyncio.run(default_lxcpath(settings))

    try:
        config = RaceConfig(
            lxcpath=lxcpath,
            container_name=container_name,
            max_attempts=max_attempts,
            tick_interval_seconds=tick_ms / 1000,
            cloexec_mode=CloexecMode(cloexec_mode.lower()),
            stop_handshake=stop_handshake,
            attempt_delay_seconds=attempt_delay,
            introspector=IntrospectorKind(introspector.lower()),
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    try:
        exit_code = asyncio.run(run(config, settings))
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        exit_code = EXIT_FAILURE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
