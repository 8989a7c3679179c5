"""Shared fixtures: isolated settings and an in-memory remote host."""

import asyncio
import base64
import re
import shlex
from typing import Callable, Dict, List, Optional

import pytest

from remotebox.audit import set_audit_enabled
from remotebox.config import reset_settings
from remotebox.identity import Identity
from remotebox.models import RemoteCommandResult
from remotebox.remote.ssh import reset_default_channel

_LIST_BASE = re.compile(r"^for d in (.+?)/\*/; do ")


def state_path(project: str) -> str:
    return f"{project}/.remotebox/state.json"


def marker_path(project: str) -> str:
    return f"{project}/.remotebox/owner.lock"


class FakeChannel:
    """
    RemoteChannel that runs remotebox's shell commands against a dict.

    Understands exactly the command shapes remotebox builds: the guarded read,
    the temp-file-and-rename write, the noclobber create of the claim marker,
    rm -f and the project listing loop. Paths are kept as the remote shell would see them
    before tilde expansion (e.g. "~/code/app/.remotebox/state.json").

    Every run yields to the event loop first so concurrent callers interleave.
    """

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})
        self.commands: List[str] = []
        self.hosts: List[str] = []
        self.identity_files: List[Optional[str]] = []
        self._failures: List[list] = []
        self.before_run: Optional[Callable[["FakeChannel", str], None]] = None

    def fail_on(self, pattern: str, error: str = "Connection timed out", times: Optional[int] = None) -> None:
        """Fail commands containing pattern (all of them, or the next `times`)."""
        self._failures.append([pattern, error, times])

    def _injected_failure(self, command: str) -> Optional[str]:
        for failure in self._failures:
            pattern, error, times = failure
            if pattern in command and (times is None or times > 0):
                if times is not None:
                    failure[2] = times - 1
                return error
        return None

    async def run(self, host: str, command: str, identity_file: Optional[str] = None) -> RemoteCommandResult:
        await asyncio.sleep(0)
        self.commands.append(command)
        self.hosts.append(host)
        self.identity_files.append(identity_file)

        if self.before_run:
            self.before_run(self, command)

        error = self._injected_failure(command)
        if error:
            return RemoteCommandResult(success=False, error=error, exit_code=255)

        if command.startswith("for d in "):
            return self._list(command)
        return self._execute(shlex.split(command))

    def _list(self, command: str) -> RemoteCommandResult:
        base = shlex.split(_LIST_BASE.match(command).group(1))[0]
        lines = []
        for path, content in sorted(self.files.items()):
            if not path.startswith(base + "/") or not path.endswith("/.remotebox/state.json"):
                continue
            project = path[len(base) + 1:-len("/.remotebox/state.json")]
            if "/" in project:
                continue
            lines.append(f"{project}\t{content.replace(chr(10), '')}\n")
        return RemoteCommandResult(success=True, stdout="".join(lines), exit_code=0)

    def _execute(self, tokens: List[str]) -> RemoteCommandResult:
        segments: List[List[str]] = [[]]
        for token in tokens:
            if token == "&&":
                segments.append([])
            else:
                segments[-1].append(token)

        noclobber = False
        stdout = ""
        for seg in segments:
            if seg == ["set", "-C"]:
                noclobber = True
            elif seg[:2] == ["mkdir", "-p"]:
                continue
            elif seg[0] == "printf":
                # printf %s PAYLOAD | base64 -d > TARGET
                payload, target = seg[2], seg[-1]
                if noclobber and target in self.files:
                    return RemoteCommandResult(
                        success=False,
                        error=f"sh: 1: cannot create {target}: File exists",
                        exit_code=2,
                    )
                self.files[target] = base64.b64decode(payload).decode("utf-8")
            elif seg[:2] == ["mv", "-f"]:
                self.files[seg[3]] = self.files.pop(seg[2])
            elif seg[:2] == ["rm", "-f"]:
                self.files.pop(seg[2], None)
            elif seg[0] == "[":
                # [ ! -e PATH ] || cat PATH
                stdout = self.files.get(seg[3], "")
            else:
                raise AssertionError(f"FakeChannel cannot run: {seg}")
        return RemoteCommandResult(success=True, stdout=stdout, exit_code=0)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point RBOX_HOME_DIR at a temp dir and clear cached settings/channels."""
    for name in ("RBOX_DEFAULT_HOST", "RBOX_IDENTITY_FILE", "RBOX_AUDIT", "RBOX_SESSION_TTL_HOURS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RBOX_HOME_DIR", str(tmp_path / "rbox-home"))
    reset_settings()
    reset_default_channel()
    set_audit_enabled(False)
    yield
    set_audit_enabled(None)
    reset_settings()
    reset_default_channel()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def alice():
    return Identity(machine="laptop", user="alice", pid=1001)


@pytest.fixture
def bob():
    return Identity(machine="desktop", user="bob", pid=2002)


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path
