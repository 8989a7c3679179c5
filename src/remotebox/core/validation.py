"""Input validation for hosts, remote paths and project names."""

import re
from typing import NamedTuple, Optional

_COMMAND_SUBSTITUTION = re.compile(r"\$[({]|`")
_CHAINING_CHARS = re.compile(r"[;|&\n\r]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0e-\x1f\x7f]")


class ValidationResult(NamedTuple):
    valid: bool
    error: Optional[str] = None


OK = ValidationResult(True)


def is_path_traversal(path: str) -> bool:
    return any(segment == ".." for segment in path.replace("\\", "/").split("/"))


def validate_remote_path(path: str) -> ValidationResult:
    """
    Validate a remote path before it is used in a shell command.

    Absolute and ~/ paths are allowed. Rejected: empty paths, ".." segments,
    command substitution ($(), ${}, backticks), command chaining characters
    (; | &) and line breaks.
    """
    if not path or not path.strip():
        return ValidationResult(False, "Remote path cannot be empty")
    if is_path_traversal(path):
        return ValidationResult(False, "Remote path cannot contain path traversal sequences")
    if _COMMAND_SUBSTITUTION.search(path):
        return ValidationResult(
            False, "Remote path cannot contain command substitution ($(), ${}, or backticks)"
        )
    if _CHAINING_CHARS.search(path):
        return ValidationResult(
            False, "Remote path cannot contain shell metacharacters (;|&) or line breaks"
        )
    return OK


def validate_project_name(name: str) -> ValidationResult:
    """A project name is a single path segment under the remote base path."""
    if not name or not name.strip():
        return ValidationResult(False, "Project name cannot be empty")
    if ".." in name:
        return ValidationResult(False, "Project name cannot contain path traversal sequences")
    if "/" in name or "\\" in name:
        return ValidationResult(False, "Project name cannot contain path separators")
    if name.startswith("-"):
        return ValidationResult(False, "Project name cannot start with a dash")
    return validate_remote_path(name)


def validate_ssh_host(host: str) -> ValidationResult:
    if not host or not host.strip():
        return ValidationResult(False, "SSH host cannot be empty")
    if host.startswith("-"):
        return ValidationResult(False, "SSH host cannot start with a dash (potential option injection)")
    if re.search(r"\s", host):
        return ValidationResult(False, "SSH host cannot contain whitespace or newlines")
    if _CONTROL_CHARS.search(host):
        return ValidationResult(False, "SSH host cannot contain control characters")
    return OK
