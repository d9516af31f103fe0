"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from firepilot import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with FIREPILOT_ prefix.
    Example: FIREPILOT_READY_TIMEOUT_SECONDS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="FIREPILOT_",
        extra="ignore",
    )

    # Binary (None = discover via FIRECRACKER_LOCATION, $PATH, ./firecracker)
    firecracker_bin: Path | None = None

    # Per-VM workspaces live under this directory
    workspace_dir: Path = Path(constants.DEFAULT_WORKSPACE_DIR)

    # Timeouts
    ready_timeout_seconds: float = Field(default=constants.READY_TIMEOUT_SECONDS, gt=0)
    request_timeout_seconds: float = Field(default=constants.REQUEST_TIMEOUT_SECONDS, gt=0)
    term_timeout_seconds: float = Field(default=constants.TERM_TIMEOUT_SECONDS, gt=0)
    kill_timeout_seconds: float = Field(default=constants.KILL_TIMEOUT_SECONDS, gt=0)
    shutdown_timeout_seconds: float = Field(default=constants.SHUTDOWN_TIMEOUT_SECONDS, gt=0)
