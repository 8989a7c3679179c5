"""Who is asking: machine, user and process of the current caller.

Every coordination operation takes an optional Identity instead of calling
socket.gethostname() / getpass.getuser() itself, so tests can play several
machines from one process.
"""

from __future__ import annotations

import getpass
import os
import socket

from pydantic import BaseModel, ConfigDict, Field


def get_machine_name() -> str:
    """Hostname used to identify this machine in leases and ownership records."""
    return socket.gethostname()


def get_user_name() -> str:
    """Local OS username (not the SSH login on the remote)."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        # No passwd entry (e.g. arbitrary uid inside a container)
        return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


class Identity(BaseModel):
    """The caller's machine, user and pid."""

    model_config = ConfigDict(frozen=True)

    machine: str = Field(..., min_length=1)
    user: str = Field(..., min_length=1)
    pid: int = Field(default_factory=os.getpid)

    @classmethod
    def current(cls) -> "Identity":
        return cls(machine=get_machine_name(), user=get_user_name(), pid=os.getpid())

    def matches(self, user: str, machine: str) -> bool:
        """True when user AND machine both belong to this identity."""
        return self.user == user and self.machine == machine

    def __str__(self) -> str:
        return f"{self.user}@{self.machine}"


def resolve_identity(identity: Identity | None) -> Identity:
    return identity if identity is not None else Identity.current()
