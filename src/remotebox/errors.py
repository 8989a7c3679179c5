"""Exceptions raised by CLI-facing helpers.

Core coordination functions return result models instead of raising; these
are for bad user input caught before any remote call is made.
"""


class RemoteboxError(Exception):
    """Base class for remotebox errors."""
    pass


class InvalidTargetError(RemoteboxError):
    """A host, remote path or project name failed validation."""
    pass
