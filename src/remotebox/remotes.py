"""
Named remotes - shortcuts for the hosts that hold projects.

Stored in ~/.remotebox/config.toml:

    [remotes.work]
    host = "build.example.com"
    user = "deploy"
    path = "~/code"
    identity_file = "~/.ssh/id_ed25519"

Anywhere the CLI takes a HOST, a remote name can be given instead.
"""

import logging
import re
import tomllib
from pathlib import Path
from typing import Dict, Optional

import tomli_w
from pydantic import BaseModel, Field, ValidationError

from remotebox.config import get_settings
from remotebox.core.atomic_write import write_file_atomic
from remotebox.core.validation import validate_remote_path, validate_ssh_host
from remotebox.errors import RemoteboxError

logger = logging.getLogger(__name__)

REMOTE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class RemoteError(RemoteboxError):
    """Raised for invalid or unknown remotes."""
    pass


class RemoteEntry(BaseModel):
    """One configured remote host."""

    host: str = Field(..., min_length=1)
    user: Optional[str] = None
    path: str = Field(default="~/code", description="Base directory holding projects")
    identity_file: Optional[str] = None

    @property
    def ssh_host(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


class ResolvedTarget(BaseModel):
    """What a command needs to reach a host."""

    ssh_host: str
    base_path: str
    identity_file: Optional[str] = None
    remote_name: Optional[str] = None


class RemoteRegistry:
    """
    Reads and writes the [remotes] table of ~/.remotebox/config.toml.

    Other tables in the file are preserved on write.
    """

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or get_settings().remotes_file

    def _read_config(self) -> dict:
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Error reading {self.config_file}: {e}")
            return {}

    def _write_config(self, config: dict) -> None:
        try:
            write_file_atomic(self.config_file, tomli_w.dumps(config))
        except OSError as e:
            raise RemoteError(f"Failed to write {self.config_file}: {e}")

    def list(self) -> Dict[str, RemoteEntry]:
        remotes: Dict[str, RemoteEntry] = {}
        for name, data in (self._read_config().get("remotes") or {}).items():
            try:
                remotes[name] = RemoteEntry.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid remote '{name}': {e.errors()[0]['msg']}")
        return remotes

    def get(self, name: str) -> Optional[RemoteEntry]:
        return self.list().get(name)

    def add(self, name: str, entry: RemoteEntry) -> None:
        """
        Add or replace a remote.

        Raises:
            RemoteError: If the name, host or path is unsafe
        """
        if not REMOTE_NAME_PATTERN.match(name):
            raise RemoteError(f"Invalid remote name '{name}'")
        for check in (validate_ssh_host(entry.ssh_host), validate_remote_path(entry.path)):
            if not check.valid:
                raise RemoteError(check.error)

        config = self._read_config()
        remotes = dict(config.get("remotes") or {})
        remotes[name] = entry.model_dump(exclude_none=True)
        config["remotes"] = remotes
        self._write_config(config)
        logger.info(f"Saved remote '{name}' ({entry.ssh_host}:{entry.path})")

    def remove(self, name: str) -> bool:
        config = self._read_config()
        remotes = dict(config.get("remotes") or {})
        if name not in remotes:
            return False
        del remotes[name]
        config["remotes"] = remotes
        self._write_config(config)
        return True

    def resolve(self, host_or_name: Optional[str]) -> ResolvedTarget:
        """
        Turn a CLI HOST argument into a target.

        A configured remote name wins over a literal host. With no argument the
        RBOX_DEFAULT_HOST setting is used.

        Raises:
            RemoteError: If nothing was given and there is no default
        """
        settings = get_settings()
        value = host_or_name or settings.default_host
        if not value:
            raise RemoteError("No host given and RBOX_DEFAULT_HOST is not set")

        entry = self.get(value)
        if entry is not None:
            return ResolvedTarget(
                ssh_host=entry.ssh_host,
                base_path=entry.path,
                identity_file=entry.identity_file,
                remote_name=value,
            )
        return ResolvedTarget(ssh_host=value, base_path=settings.remote_base_path)
