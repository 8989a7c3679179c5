"""
Remote Command Channel - run one command string on a remote host over SSH.

Every remote read or write in remotebox goes through a RemoteChannel. The
default implementation shells out to the system `ssh` binary with:
- BatchMode=yes (never prompt; a prompt would hang until the timeout)
- an explicit ConnectTimeout and an overall asyncio timeout
- "--" before the host so it can never be parsed as an option

A timeout or a non-zero exit is reported as success=False with an error
string. Callers decide what a failure means; the channel never guesses.
"""

import asyncio
import logging
import re
from typing import List, Optional, Protocol, runtime_checkable

from remotebox.config import get_settings
from remotebox.core.shell import describe_command
from remotebox.core.validation import validate_ssh_host
from remotebox.models import RemoteCommandResult

logger = logging.getLogger(__name__)

_FINGERPRINT = re.compile(r"[A-Fa-f0-9]{2}(:[A-Fa-f0-9]{2}){15,}")
_IDENTITY_FILE = re.compile(r"identity file[^,\n]*", re.IGNORECASE)
_USERNAME = re.compile(r"user(name)?[=:\s]+\S+", re.IGNORECASE)


def sanitize_ssh_error(error: str) -> str:
    """
    Strip key paths, host fingerprints and usernames from ssh stderr.

    Authentication failures collapse to one generic message.
    """
    sanitized = _IDENTITY_FILE.sub("identity file [REDACTED]", error)
    sanitized = _FINGERPRINT.sub("[FINGERPRINT]", sanitized)
    sanitized = _USERNAME.sub("user=[REDACTED]", sanitized)

    if "Permission denied" in sanitized or "authentication" in sanitized.lower():
        return "SSH authentication failed. Check your SSH key and remote configuration."

    return sanitized.strip()


@runtime_checkable
class RemoteChannel(Protocol):
    """Anything that can run a command on a host and report the outcome."""

    async def run(
        self,
        host: str,
        command: str,
        identity_file: Optional[str] = None,
    ) -> RemoteCommandResult:
        ...


class SshChannel:
    """
    RemoteChannel backed by the local `ssh` client.

    Args:
        ssh_binary: ssh executable (defaults to settings.ssh_binary)
        timeout: Overall seconds per command (defaults to settings.ssh_timeout)
        connect_timeout: ssh ConnectTimeout in seconds
        identity_file: Default private key for every command
    """

    def __init__(
        self,
        ssh_binary: Optional[str] = None,
        timeout: Optional[float] = None,
        connect_timeout: Optional[int] = None,
        identity_file: Optional[str] = None,
    ):
        settings = get_settings()
        self.ssh_binary = ssh_binary or settings.ssh_binary
        self.timeout = timeout if timeout is not None else settings.ssh_timeout
        self.connect_timeout = connect_timeout or settings.ssh_connect_timeout
        self.identity_file = identity_file if identity_file is not None else settings.identity_file

    def build_args(self, host: str, command: str, identity_file: Optional[str] = None) -> List[str]:
        args = [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        key = identity_file or self.identity_file
        if key:
            args.extend(["-i", key])
        args.extend(["--", host, command])
        return args

    async def run(
        self,
        host: str,
        command: str,
        identity_file: Optional[str] = None,
    ) -> RemoteCommandResult:
        check = validate_ssh_host(host)
        if not check.valid:
            return RemoteCommandResult(success=False, error=check.error)

        args = self.build_args(host, command, identity_file)
        logger.debug(f"ssh {host}: {describe_command(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Could not start {self.ssh_binary}: {e}")
            return RemoteCommandResult(success=False, error=f"Failed to start ssh: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"Remote command on {host} timed out after {self.timeout}s")
            return RemoteCommandResult(
                success=False,
                error=f"Remote command timed out after {self.timeout:g}s",
            )

        out = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raw = stderr.decode("utf-8", errors="replace").strip()
            error = sanitize_ssh_error(raw) if raw else f"Remote command failed with exit code {process.returncode}"
            logger.debug(f"ssh {host} exited {process.returncode}: {error}")
            return RemoteCommandResult(
                success=False,
                stdout=out,
                error=error,
                exit_code=process.returncode,
            )

        return RemoteCommandResult(success=True, stdout=out, exit_code=0)


_default_channel: Optional[SshChannel] = None


def get_default_channel() -> SshChannel:
    """Shared SshChannel configured from settings."""
    global _default_channel
    if _default_channel is None:
        _default_channel = SshChannel()
    return _default_channel


def reset_default_channel() -> None:
    global _default_channel
    _default_channel = None
