"""Safe construction of remote shell command strings.

Any path or identifier interpolated into a command that runs on the remote
host goes through one of these helpers first.
"""

import base64
import re

_PAYLOAD = re.compile(r"[A-Za-z0-9+/=]{48,}")


def escape_shell_arg(arg: str) -> str:
    """Single-quote a string for POSIX sh, escaping embedded single quotes.

    Always quotes (even "safe" strings) so the output is predictable:
    "it's" becomes 'it'"'"'s'.
    """
    return "'" + arg.replace("'", "'\"'\"'") + "'"


def escape_remote_path(path: str) -> str:
    """Quote a remote path while keeping a leading ~ expandable.

    "~/code/my app" becomes ~/'code/my app' so the remote shell still expands
    the home directory. A bare "~" is returned unquoted.
    """
    if path == "~":
        return "~"
    if path.startswith("~/"):
        rest = path[2:]
        return "~/" + escape_shell_arg(rest) if rest else "~/"
    return escape_shell_arg(path)


def encode_payload(content: str) -> str:
    """Base64-encode text so it can be shipped through `printf | base64 -d`."""
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


def join_remote_path(base: str, *parts: str) -> str:
    """Join remote POSIX path segments without touching a leading ~."""
    path = base.rstrip("/") or "/"
    for part in parts:
        part = part.strip("/")
        if part:
            path = f"{path}{part}" if path.endswith("/") else f"{path}/{part}"
    return path


def describe_command(command: str) -> str:
    """Shorten a command for log output (base64 payloads are noise)."""
    return _PAYLOAD.sub("<payload>", command)
