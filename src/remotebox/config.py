"""
remotebox Configuration

Settings are loaded from (in order of precedence):
1. Environment variables (prefixed with RBOX_)
2. ~/.remotebox/.env

Key settings:
- RBOX_SSH_TIMEOUT: Seconds before a remote command is abandoned (transport error)
- RBOX_SESSION_TTL_HOURS: Lifetime of a local session lease
- RBOX_IDENTITY_FILE: SSH private key passed to every remote command
- RBOX_AUDIT: Enable the JSON Lines audit log (~/.remotebox/audit.log)
- RBOX_LOG_LEVEL: Root log level used by the CLI

Directory structure:
    ~/.remotebox/
    ├── .env            # Optional RBOX_* overrides
    ├── config.toml     # Named remotes (see remotebox.remotes)
    └── audit.log       # Audit trail when RBOX_AUDIT=1

Per project (both locally and on the remote host):
    <project>/.remotebox/state.json

On the remote host only:
    <project>/.remotebox/owner.lock    # noclobber claim marker
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_HOME_DIR = Path.home() / ".remotebox"


class Settings(BaseSettings):
    """
    remotebox configuration settings.

    Every field can be overridden with an RBOX_-prefixed environment variable
    or a line in ~/.remotebox/.env.
    """

    app_name: str = "remotebox"

    # Local paths
    home_dir: Path = DEFAULT_HOME_DIR
    state_dir_name: str = ".remotebox"
    state_file_name: str = "state.json"
    claim_marker_name: str = "owner.lock"

    # Session lease
    session_ttl_hours: float = Field(default=24.0, gt=0)

    # SSH transport
    ssh_binary: str = "ssh"
    ssh_timeout: float = Field(default=30.0, gt=0)
    ssh_connect_timeout: int = Field(default=10, gt=0)
    identity_file: Optional[str] = None

    # Defaults for CLI commands
    default_host: Optional[str] = None
    remote_base_path: str = "~/code"

    # Observability
    audit_enabled: bool = Field(default=False, alias="RBOX_AUDIT")
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="RBOX_",
        env_file=str(DEFAULT_HOME_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def session_ttl(self) -> timedelta:
        """Lease lifetime as a timedelta."""
        return timedelta(hours=self.session_ttl_hours)

    @property
    def state_relpath(self) -> str:
        """State file path relative to a project root, POSIX separators."""
        return f"{self.state_dir_name}/{self.state_file_name}"

    @property
    def audit_log_path(self) -> Path:
        return self.home_dir / "audit.log"

    @property
    def remotes_file(self) -> Path:
        return self.home_dir / "config.toml"


# Global settings instance - created lazily
_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False) -> Settings:
    """
    Get the global Settings instance.

    Args:
        force_reload: Re-read the environment (useful in tests)

    Returns:
        Settings instance
    """
    global _settings

    if _settings is None or force_reload:
        _settings = Settings()
        logger.debug(f"Loaded settings (home={_settings.home_dir}, timeout={_settings.ssh_timeout}s)")

    return _settings


def reset_settings() -> None:
    """Drop the cached Settings so the next get_settings() rebuilds it."""
    global _settings
    _settings = None
