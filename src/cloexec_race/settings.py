"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from cloexec_race import constants


class Settings(BaseSettings):
    """Helper binary locations and timeouts.

    All settings can be overridden via environment variables with CLOEXEC_RACE_ prefix.
    Example: CLOEXEC_RACE_LSOF_BIN=/usr/sbin/lsof
    """

    model_config = SettingsConfigDict(
        env_prefix="CLOEXEC_RACE_",
        extra="ignore",
    )

    # Privileged introspection
    sudo_bin: str = "sudo"
    cat_bin: str = "cat"
    lsof_bin: str = "lsof"
    procfs_root: Path = Path("/proc")

    # LXC tools
    lxc_start_bin: str = "lxc-start"
    lxc_stop_bin: str = "lxc-stop"
    lxc_info_bin: str = "lxc-info"
    lxc_config_bin: str = "lxc-config"
    default_lxcpath: Path | None = None
    """Overrides `lxc-config lxc.lxcpath` discovery when set."""

    # Applied to helpers only; lxc-start is never bounded.
    command_timeout_seconds: float = constants.DEFAULT_COMMAND_TIMEOUT_SECONDS
