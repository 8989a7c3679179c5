"""
Session Lease Manager - local, tamper-evident record of who is using a project.

The lease lives in the `session` section of the project's local state file
(<project>/.remotebox/state.json). Other sections of that file belong to other
components and are carried through every write untouched.

The integrity tag is an HMAC-SHA256 over the lease fields with a key that
ships with the package. It catches partial writes, hand edits and clobbering
by a naive writer. It is not a secret and does not authenticate anyone.

Any anomaly on read (missing file, bad JSON, missing or mistyped field, tag
mismatch, expiry) reads as "no lease". Nothing in here raises to callers
except write_lease on a genuine filesystem error.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from remotebox.config import get_settings
from remotebox.core.atomic_write import write_json_atomic
from remotebox.identity import Identity, resolve_identity
from remotebox.models import SessionLease, format_rfc3339, utc_now

logger = logging.getLogger(__name__)

LEASE_INTEGRITY_KEY = b"remotebox/session-lease/v1"

SESSION_SECTION = "session"

# Owner read-only once written
SESSION_FILE_MODE = 0o400
STATE_FILE_MODE = 0o600

PathLike = Union[str, Path]


# ============================================================================
# Local state file
# ============================================================================

def lease_path(project_path: PathLike) -> Path:
    """Absolute path of the local state file holding the lease."""
    settings = get_settings()
    return Path(project_path) / settings.state_dir_name / settings.state_file_name


def read_local_state(project_path: PathLike) -> Dict[str, Any]:
    """Load the local state document; absent or unreadable reads as {}."""
    path = lease_path(project_path)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable state file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.debug(f"Ignoring state file {path}: not a JSON object")
        return {}
    return data


def _write_local_state(project_path: PathLike, document: Dict[str, Any]) -> None:
    path = lease_path(project_path)
    if not document:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        return
    mode = SESSION_FILE_MODE if SESSION_SECTION in document else STATE_FILE_MODE
    write_json_atomic(path, document, file_mode=mode)


def update_local_section(project_path: PathLike, section: str, data: Optional[Dict[str, Any]]) -> None:
    """
    Read-merge-write one section of the local state file.

    Args:
        project_path: Project root
        section: Top-level key to replace
        data: New section content, or None to remove the section
    """
    document = read_local_state(project_path)
    if data is None:
        if section not in document:
            return
        document.pop(section)
    else:
        document[section] = data
    _write_local_state(project_path, document)


# ============================================================================
# Integrity tag
# ============================================================================

def compute_lease_hash(lease: SessionLease) -> str:
    payload = lease.signing_payload().encode("utf-8")
    return hmac.new(LEASE_INTEGRITY_KEY, payload, hashlib.sha256).hexdigest()


def verify_lease_hash(lease: SessionLease) -> bool:
    """False if the tag is missing or does not match the fields."""
    if not lease.hash:
        return False
    return hmac.compare_digest(lease.hash, compute_lease_hash(lease))


def is_expired(lease: SessionLease, now: Optional[datetime] = None) -> bool:
    now = now or utc_now()
    return now >= lease.expires_at


def parse_lease(data: Any, now: Optional[datetime] = None) -> Optional[SessionLease]:
    """Validate a raw session section. Returns None unless it is intact and unexpired."""
    if not isinstance(data, dict):
        return None
    try:
        lease = SessionLease.model_validate(data)
    except ValidationError:
        return None
    if not verify_lease_hash(lease):
        logger.warning(f"Session lease from {lease.machine} failed its integrity check; ignoring it")
        return None
    if is_expired(lease, now):
        return None
    return lease


# ============================================================================
# Lease operations
# ============================================================================

def build_lease(
    identity: Optional[Identity] = None,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> SessionLease:
    """Create a signed lease for identity, valid for ttl from now."""
    identity = resolve_identity(identity)
    ttl = ttl if ttl is not None else get_settings().session_ttl
    now = now or utc_now()

    lease = SessionLease(
        machine=identity.machine,
        user=identity.user,
        timestamp=format_rfc3339(now),
        pid=identity.pid,
        expires=format_rfc3339(now + ttl),
    )
    return lease.model_copy(update={"hash": compute_lease_hash(lease)})


def write_lease(
    project_path: PathLike,
    identity: Optional[Identity] = None,
    ttl: Optional[timedelta] = None,
) -> SessionLease:
    """
    Record that this machine is now using the project.

    Overwrites any previous lease (idempotent for the same machine). The state
    file ends up owner read-only; the write itself is a rename, so a later
    write_lease or delete_lease still works.

    Returns:
        The lease that was written, including its integrity tag
    """
    identity = resolve_identity(identity)
    previous = read_lease(project_path)
    if previous is not None and previous.machine != identity.machine:
        logger.warning(
            f"Replacing active session lease held by {previous.user}@{previous.machine}"
        )

    lease = build_lease(identity, ttl)
    update_local_section(project_path, SESSION_SECTION, lease.model_dump())
    logger.debug(f"Wrote session lease for {identity} (expires {lease.expires})")
    return lease


def read_lease(project_path: PathLike) -> Optional[SessionLease]:
    """Return the current valid lease, or None. Never raises."""
    return parse_lease(read_local_state(project_path).get(SESSION_SECTION))


def delete_lease(project_path: PathLike) -> None:
    """Remove the session section only. Missing file is a no-op."""
    path = lease_path(project_path)
    if not path.exists():
        return
    try:
        update_local_section(project_path, SESSION_SECTION, None)
    except OSError as e:
        # Another process may have removed or replaced the file meanwhile
        logger.debug(f"Could not delete session lease at {path}: {e}")


def lease_file_mode(project_path: PathLike) -> Optional[int]:
    """Permission bits of the state file, or None when it does not exist."""
    try:
        return os.stat(lease_path(project_path)).st_mode & 0o777
    except FileNotFoundError:
        return None
