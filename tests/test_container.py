"""Tests for LxcController and lxcpath discovery.

The LXC tools are never executed: run_command is patched and the argv it
receives is asserted instead.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from cloexec_race.container import ContainerController, ContainerHandle, LxcController, default_lxcpath
from cloexec_race.exceptions import ContainerError, ContainerStartError, ContainerStopError
from cloexec_race.settings import Settings
from cloexec_race.subprocess_utils import CommandResult

LXCPATH = Path("/var/lib/lxc")


def _result(stdout: str = "", stderr: str = "", returncode: int = 0) -> CommandResult:
    return CommandResult(argv=("lxc",), returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def controller() -> LxcController:
    return LxcController(Settings())


@pytest.fixture
def handle(controller: LxcController) -> ContainerHandle:
    return controller.create("precise", LXCPATH)


# ============================================================================
# create / name
# ============================================================================


class TestCreate:
    def test_returns_handle(self, controller: LxcController) -> None:
        handle = controller.create("precise", "/srv/lxc")  # type: ignore[arg-type]
        assert handle == ContainerHandle(name="precise", lxcpath=Path("/srv/lxc"))
        assert controller.name(handle) == "precise"

    @pytest.mark.parametrize("name", ["", "a/b", ".", ".."])
    def test_invalid_name(self, controller: LxcController, name: str) -> None:
        with pytest.raises(ContainerError, match="Invalid container name"):
            controller.create(name, LXCPATH)

    def test_satisfies_protocol(self, controller: LxcController) -> None:
        assert isinstance(controller, ContainerController)


# ============================================================================
# start
# ============================================================================


class TestStart:
    async def test_argv_and_inherited_descriptors(self, controller: LxcController, handle: ContainerHandle) -> None:
        """lxc-start runs daemonized, unbounded, without closing our descriptors."""
        mock_run = AsyncMock(return_value=_result())
        with patch("cloexec_race.container.run_command", mock_run):
            await controller.start(handle)

        mock_run.assert_awaited_once_with(
            ("lxc-start", "-n", "precise", "-P", "/var/lib/lxc", "-d"),
            close_fds=False,
        )

    async def test_nonzero_exit(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result(stderr="lxc-start: container is already running\n", returncode=1))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(
                ContainerStartError, match=r"\[precise\] Can't start container: lxc-start: container"
            ) as exc_info,
        ):
            await controller.start(handle)
        assert exc_info.value.context["returncode"] == 1
        assert exc_info.value.container_name == "precise"

    async def test_missing_binary(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(side_effect=FileNotFoundError(2, "No such file or directory", "lxc-start"))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerStartError, match="Can't start container"),
        ):
            await controller.start(handle)


# ============================================================================
# init_pid
# ============================================================================


class TestInitPid:
    async def test_parses_pid(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result(stdout="10711\n"))
        with patch("cloexec_race.container.run_command", mock_run):
            assert await controller.init_pid(handle) == 10711

        argv = mock_run.await_args.args[0]
        assert argv == ("lxc-info", "-n", "precise", "-P", "/var/lib/lxc", "-p", "-H")
        assert mock_run.await_args.kwargs["timeout"] == 30.0

    async def test_not_running(self, controller: LxcController, handle: ContainerHandle) -> None:
        """lxc-info prints nothing for a stopped container."""
        mock_run = AsyncMock(return_value=_result(stdout=""))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerError, match="no init pid"),
        ):
            await controller.init_pid(handle)

    async def test_nonpositive_pid(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result(stdout="0\n"))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerError, match="Invalid init pid"),
        ):
            await controller.init_pid(handle)

    async def test_failure(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result(stderr="precise doesn't exist", returncode=1))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerError, match="Can't query init pid: precise doesn't exist"),
        ):
            await controller.init_pid(handle)

    async def test_timeout(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(side_effect=TimeoutError("lxc-info did not finish within 30.0s"))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerError, match="did not finish"),
        ):
            await controller.init_pid(handle)


# ============================================================================
# stop
# ============================================================================


class TestStop:
    async def test_kills(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result())
        with patch("cloexec_race.container.run_command", mock_run):
            await controller.stop(handle)
        assert mock_run.await_args.args[0] == ("lxc-stop", "-n", "precise", "-P", "/var/lib/lxc", "-k")

    async def test_failure(self, controller: LxcController, handle: ContainerHandle) -> None:
        mock_run = AsyncMock(return_value=_result(returncode=2))
        with (
            patch("cloexec_race.container.run_command", mock_run),
            pytest.raises(ContainerStopError, match="exit 2"),
        ):
            await controller.stop(handle)

    async def test_custom_binaries(self, handle: ContainerHandle) -> None:
        controller = LxcController(Settings(lxc_stop_bin="/opt/lxc/bin/lxc-stop"))
        mock_run = AsyncMock(return_value=_result())
        with patch("cloexec_race.container.run_command", mock_run):
            await controller.stop(handle)
        assert mock_run.await_args.args[0][0] == "/opt/lxc/bin/lxc-stop"


# ============================================================================
# default_lxcpath
# ============================================================================


class TestDefaultLxcpath:
    async def test_settings_override(self) -> None:
        mock_run = AsyncMock()
        with patch("cloexec_race.container.run_command", mock_run):
            path = await default_lxcpath(Settings(default_lxcpath=Path("/srv/lxc")))
        assert path == Path("/srv/lxc")
        mock_run.assert_not_awaited()

    async def test_from_lxc_config(self) -> None:
        mock_run = AsyncMock(return_value=_result(stdout="/home/lxc/containers\n"))
        with patch("cloexec_race.container.run_command", mock_run):
            path = await default_lxcpath(Settings(default_lxcpath=None))
        assert path == Path("/home/lxc/containers")
        assert mock_run.await_args.args[0] == ("lxc-config", "lxc.lxcpath")

    async def test_fallback_when_missing(self) -> None:
        mock_run = AsyncMock(side_effect=FileNotFoundError(2, "No such file or directory"))
        with patch("cloexec_race.container.run_command", mock_run):
            assert await default_lxcpath(Settings(default_lxcpath=None)) == Path("/var/lib/lxc")

    async def test_fallback_on_empty_output(self) -> None:
        mock_run = AsyncMock(return_value=_result(stdout="\n"))
        with patch("cloexec_race.container.run_command", mock_run):
            assert await default_lxcpath(Settings(default_lxcpath=None)) == Path("/var/lib/lxc")

    async def test_fallback_on_failure(self) -> None:
        mock_run = AsyncMock(return_value=_result(stdout="/x", returncode=1))
        with patch("cloexec_race.container.run_command", mock_run):
            assert await default_lxcpath(Settings(default_lxcpath=None)) == Path("/var/lib/lxc")
