"""
Remote Ownership Store - the per-project state document on the remote host.

The document lives at <remote project>/.remotebox/state.json and has two
independent sections:

    {"ownership": {"owner": ..., "machine": ..., "created": ...},
     "session":   {...mirrored SessionLease...}}

This module is the only code that reads or writes it, and every write goes
through update_remote_state(): read the current document, replace exactly one
section, write the whole document to a temp file and `mv` it into place. The
sibling section is carried through as raw JSON, never re-serialized from a
model, so it survives byte-for-byte in content.

Reads distinguish three outcomes, which callers must not conflate:
- absent   -> the read command exits 0 with empty output
- corrupt  -> exits 0 with output that is not a JSON object
- failure  -> the channel reports an error (ssh failure, timeout, I/O error)

Next to the document sits the claim marker, .remotebox/owner.lock, holding
the bare ownership record of whoever claimed the project. It is created with
noclobber by remotebox.core.claim and is the only file the claim races on.
set_ownership writes the section and then the marker, clear_ownership
removes the section and then the marker.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, NamedTuple, Optional

from remotebox.config import get_settings
from remotebox.core.shell import encode_payload, escape_remote_path, escape_shell_arg, join_remote_path
from remotebox.core.validation import validate_remote_path
from remotebox.identity import Identity, resolve_identity
from remotebox.models import (
    AuthorizationResult,
    OwnershipRecord,
    OwnershipStatus,
    ProjectOwnership,
    ReleaseResult,
    RemoteCommandResult,
    RemoteProjectState,
    SessionLease,
    SetOwnershipResult,
    format_rfc3339,
    utc_now,
)
from remotebox.remote.ssh import RemoteChannel, get_default_channel

logger = logging.getLogger(__name__)

OWNERSHIP_SECTION = "ownership"
SESSION_SECTION = "session"


class RemoteStateRead(NamedTuple):
    """Raw outcome of reading the remote state document."""

    document: Optional[Dict[str, Any]]
    exists: bool = False
    corrupt: bool = False
    error: Optional[str] = None


# ============================================================================
# Paths and commands
# ============================================================================

def remote_state_dir(project_path: str) -> str:
    return join_remote_path(project_path, get_settings().state_dir_name)


def remote_state_file(project_path: str) -> str:
    settings = get_settings()
    return join_remote_path(project_path, settings.state_dir_name, settings.state_file_name)


def remote_claim_marker(project_path: str) -> str:
    settings = get_settings()
    return join_remote_path(project_path, settings.state_dir_name, settings.claim_marker_name)


def build_read_command(state_file: str) -> str:
    """Exit 0 with no output when the file is absent; non-zero only if cat fails."""
    quoted = escape_remote_path(state_file)
    return f"[ ! -e {quoted} ] || cat {quoted}"


def build_write_command(state_dir: str, state_file: str, content: str) -> str:
    """Write content to a temp file next to the target, then rename over it."""
    temp_file = f"{state_file}.tmp.{uuid.uuid4().hex[:12]}"
    return (
        f"mkdir -p {escape_remote_path(state_dir)} && "
        f"printf '%s' {escape_shell_arg(encode_payload(content))} | base64 -d > {escape_remote_path(temp_file)} && "
        f"mv -f {escape_remote_path(temp_file)} {escape_remote_path(state_file)}"
    )


def build_create_command(state_dir: str, target: str, content: str) -> str:
    """Create target only if it does not exist (noclobber); fails otherwise."""
    return (
        f"set -C && mkdir -p {escape_remote_path(state_dir)} && "
        f"printf '%s' {escape_shell_arg(encode_payload(content))} | base64 -d > {escape_remote_path(target)}"
    )


def build_remove_command(state_file: str) -> str:
    return f"rm -f {escape_remote_path(state_file)}"


def serialize_document(document: Dict[str, Any]) -> str:
    return json.dumps(document, indent=2) + "\n"


def _invalid_path(project_path: str) -> Optional[str]:
    check = validate_remote_path(project_path)
    return None if check.valid else check.error


async def _run(
    host: str,
    command: str,
    channel: Optional[RemoteChannel],
    identity_file: Optional[str],
) -> RemoteCommandResult:
    channel = channel or get_default_channel()
    return await channel.run(host, command, identity_file)


# ============================================================================
# Document read / read-merge-write
# ============================================================================

def parse_state_document(text: Optional[str]) -> RemoteStateRead:
    if text is None or not text.strip():
        return RemoteStateRead(document={}, exists=False)
    try:
        data = json.loads(text)
    except ValueError:
        return RemoteStateRead(document=None, exists=True, corrupt=True)
    if not isinstance(data, dict):
        return RemoteStateRead(document=None, exists=True, corrupt=True)
    return RemoteStateRead(document=data, exists=True)


async def read_remote_state(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteStateRead:
    """Fetch and parse the remote state document."""
    invalid = _invalid_path(project_path)
    if invalid:
        return RemoteStateRead(document=None, error=invalid)

    result = await _run(host, build_read_command(remote_state_file(project_path)), channel, identity_file)
    if not result.success:
        return RemoteStateRead(document=None, error=result.error or "Failed to read remote project state")

    state = parse_state_document(result.stdout)
    if state.corrupt:
        logger.warning(f"Remote state for {host}:{project_path} is not valid JSON")
    return state


async def update_remote_state(
    host: str,
    project_path: str,
    section: str,
    data: Optional[Dict[str, Any]],
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    """
    Replace one section of the remote state document, keeping the others.

    A failed read aborts the update: writing without knowing the current
    document could drop a sibling section. A corrupt document has nothing to
    preserve and is replaced. When the last section is removed the file is
    deleted.

    Args:
        host: SSH host
        project_path: Remote project directory
        section: Top-level key to replace
        data: New section content, or None to remove it
    """
    current = await read_remote_state(host, project_path, channel=channel, identity_file=identity_file)
    if current.error:
        return RemoteCommandResult(success=False, error=current.error)

    document: Dict[str, Any] = dict(current.document or {})
    if current.corrupt:
        logger.warning(f"Overwriting corrupt remote state for {host}:{project_path}")

    if data is None:
        if section not in document and not current.corrupt:
            return RemoteCommandResult(success=True)
        document.pop(section, None)
    else:
        document[section] = data

    state_file = remote_state_file(project_path)
    if document:
        command = build_write_command(remote_state_dir(project_path), state_file, serialize_document(document))
    else:
        command = build_remove_command(state_file)
    return await _run(host, command, channel, identity_file)


# ============================================================================
# Ownership
# ============================================================================

def parse_ownership_info(data: Any) -> Optional[OwnershipRecord]:
    """
    Extract an OwnershipRecord from a state document (or its JSON text).

    Accepts both the nested {"ownership": {...}} shape and a bare record.
    Returns None if anything is missing or mistyped.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return None
    if not isinstance(data, dict):
        return None
    section = data.get(OWNERSHIP_SECTION, data)
    return RemoteProjectState.from_document({OWNERSHIP_SECTION: section}).ownership


def create_ownership_record(identity: Optional[Identity] = None) -> OwnershipRecord:
    identity = resolve_identity(identity)
    return OwnershipRecord(owner=identity.user, machine=identity.machine, created=format_rfc3339(utc_now()))


def _status_for(info: OwnershipRecord, identity: Optional[Identity]) -> OwnershipStatus:
    identity = resolve_identity(identity)
    return OwnershipStatus(
        has_owner=True,
        is_owner=identity.matches(info.owner, info.machine),
        info=info,
    )


def status_from_document(document: Dict[str, Any], identity: Optional[Identity] = None) -> OwnershipStatus:
    """Ownership status of a parsed document; a present but invalid section is corrupt."""
    state = RemoteProjectState.from_document(document)
    if state.ownership is None:
        return OwnershipStatus(has_owner=False, corrupt=OWNERSHIP_SECTION in document)
    return _status_for(state.ownership, identity)


async def get_ownership_status(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> OwnershipStatus:
    """
    Read who owns a remote project.

    Returns has_owner=False for an absent, empty or malformed document. A
    transport failure also has has_owner=False but carries `error`; callers
    that gate writes must check it.
    """
    state = await read_remote_state(host, project_path, channel=channel, identity_file=identity_file)
    if state.error:
        return OwnershipStatus(has_owner=False, error=state.error)
    if state.corrupt:
        return OwnershipStatus(has_owner=False, corrupt=True)
    return status_from_document(state.document or {}, identity)


async def set_ownership(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> SetOwnershipResult:
    """
    Record the identity as owner (read-merge-write, session section kept).

    The claim marker is overwritten with the same record afterwards. This is
    not a claim: it does not check for an existing owner. Use
    remotebox.core.claim.claim_ownership when racing claimants are possible.
    """
    invalid = _invalid_path(project_path)
    if invalid:
        return SetOwnershipResult(success=False, error=invalid)

    record = create_ownership_record(identity)
    result = await update_remote_state(
        host,
        project_path,
        OWNERSHIP_SECTION,
        record.model_dump(),
        channel=channel,
        identity_file=identity_file,
    )
    if not result.success:
        return SetOwnershipResult(success=False, error=result.error or "Failed to set ownership")

    marker = await write_claim_marker(host, project_path, record, channel=channel, identity_file=identity_file)
    if not marker.success:
        return SetOwnershipResult(success=False, error=marker.error or "Failed to write claim marker")

    logger.info(f"Ownership of {host}:{project_path} recorded for {record.owner}@{record.machine}")
    return SetOwnershipResult(success=True, record=record)


async def clear_ownership(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> ReleaseResult:
    """
    Remove the ownership section and claim marker if the identity owns them
    (or nobody does).

    Someone else's ownership is left alone and reported as skipped. With no
    ownership section the marker decides: a marker naming someone else is a
    claim in progress and is skipped too.
    """
    status = await get_ownership_status(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if status.error:
        return ReleaseResult(success=False, error=status.error)
    if not status.has_owner:
        status = await read_claim_marker(
            host, project_path, channel=channel, identity=identity, identity_file=identity_file
        )
        if status.error:
            return ReleaseResult(success=False, error=status.error)
    if status.has_owner and not status.is_owner:
        logger.info(f"Not releasing {host}:{project_path}: owned by {status.info.describe()}")
        return ReleaseResult(success=True, skipped=True, owner_info=status.info)

    result = await update_remote_state(
        host, project_path, OWNERSHIP_SECTION, None, channel=channel, identity_file=identity_file
    )
    if result.success:
        result = await remove_claim_marker(host, project_path, channel=channel, identity_file=identity_file)
    if not result.success:
        return ReleaseResult(success=False, error=result.error or "Failed to release ownership")
    return ReleaseResult(success=True, owner_info=status.info)


# ============================================================================
# Claim marker
# ============================================================================

async def read_claim_marker(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> OwnershipStatus:
    """
    Read who holds the claim marker.

    Same outcomes as get_ownership_status: absent -> has_owner=False,
    unparsable -> corrupt, transport failure -> error.
    """
    invalid = _invalid_path(project_path)
    if invalid:
        return OwnershipStatus(has_owner=False, error=invalid)

    result = await _run(host, build_read_command(remote_claim_marker(project_path)), channel, identity_file)
    if not result.success:
        return OwnershipStatus(has_owner=False, error=result.error or "Failed to read claim marker")

    text = (result.stdout or "").strip()
    if not text:
        return OwnershipStatus(has_owner=False)
    info = parse_ownership_info(text)
    if info is None:
        logger.warning(f"Claim marker for {host}:{project_path} is not a valid ownership record")
        return OwnershipStatus(has_owner=False, corrupt=True)
    return _status_for(info, identity)


async def create_claim_marker(
    host: str,
    project_path: str,
    record: OwnershipRecord,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    """Create the marker holding record; fails if any marker already exists."""
    command = build_create_command(
        remote_state_dir(project_path),
        remote_claim_marker(project_path),
        serialize_document(record.model_dump()),
    )
    return await _run(host, command, channel, identity_file)


async def write_claim_marker(
    host: str,
    project_path: str,
    record: OwnershipRecord,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    command = build_write_command(
        remote_state_dir(project_path),
        remote_claim_marker(project_path),
        serialize_document(record.model_dump()),
    )
    return await _run(host, command, channel, identity_file)


async def remove_claim_marker(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    return await _run(host, build_remove_command(remote_claim_marker(project_path)), channel, identity_file)


async def check_write_authorization(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> AuthorizationResult:
    """Status read plus the authorization policy (see remotebox.core.gate)."""
    # Import here to avoid circular dependency
    from remotebox.core.gate import evaluate_authorization

    status = await get_ownership_status(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    return evaluate_authorization(status)


# ============================================================================
# Session mirror
# ============================================================================

async def mirror_session(
    host: str,
    project_path: str,
    lease: SessionLease,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    """Copy a local lease into the remote document's session section."""
    return await update_remote_state(
        host, project_path, SESSION_SECTION, lease.model_dump(), channel=channel, identity_file=identity_file
    )


async def clear_session_mirror(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity_file: Optional[str] = None,
) -> RemoteCommandResult:
    return await update_remote_state(
        host, project_path, SESSION_SECTION, None, channel=channel, identity_file=identity_file
    )


# ============================================================================
# Listing
# ============================================================================

def build_list_command(base_path: str) -> str:
    """One line per project: "<name>\\t<state document on one line>"."""
    state_rel = escape_shell_arg(get_settings().state_relpath)
    base = escape_remote_path(base_path.rstrip("/") or "/")
    return (
        f"for d in {base}/*/; do "
        f"f=\"${{d}}\"{state_rel}; "
        f"[ -f \"$f\" ] || continue; "
        f"printf '%s\\t' \"$(basename \"$d\")\"; "
        f"tr -d '\\n' < \"$f\"; echo; "
        f"done"
    )


def parse_listing(output: str, identity: Optional[Identity] = None) -> List[ProjectOwnership]:
    rows: List[ProjectOwnership] = []
    for line in output.splitlines():
        if "\t" not in line:
            continue
        project, _, raw = line.partition("\t")
        state = parse_state_document(raw)
        if state.corrupt:
            status = OwnershipStatus(has_owner=False, corrupt=True)
        else:
            status = status_from_document(state.document or {}, identity)
        rows.append(ProjectOwnership(project=project, status=status))
    return sorted(rows, key=lambda row: row.project)


async def list_ownership(
    host: str,
    base_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> List[ProjectOwnership]:
    """
    Ownership of every project under base_path, in one round trip.

    Projects without a state document are not listed.

    Raises:
        ConnectionError: If the listing command fails
        ValueError: If base_path is not a safe remote path
    """
    invalid = _invalid_path(base_path)
    if invalid:
        raise ValueError(invalid)

    result = await _run(host, build_list_command(base_path), channel, identity_file)
    if not result.success:
        raise ConnectionError(result.error or f"Failed to list projects on {host}")
    return parse_listing(result.stdout or "", identity)
