"""
Atomic Claim Protocol - become the owner of a remote project without a race.

The only atomic primitive available is the remote shell's noclobber mode
(`set -C`): a `>` redirect fails if the target already exists. Claims race on
the claim marker (.remotebox/owner.lock), never on the state document, so a
mirrored session section cannot get in the way. Of any number of
simultaneous first claimants exactly one create succeeds; the winner then
merges its record into the ownership section of the document.

When the create fails the protocol falls back to reading:

    create ok                      -> ACQUIRED (record merged into document)
    read fails                     -> TRANSPORT_ERROR
    valid owner, same user+machine -> REFRESHED (plain read-merge-write)
    valid owner, someone else      -> OWNED_BY_OTHER (record returned)
    no valid owner                 -> retry the create once, then
                                      CONCURRENT_ACCESS

The owner is taken from the document, or from the marker while a claim is
still being merged. A marker that keeps existing without a valid record after
the retry is reported as a conflict; `rbox owner claim --force` resolves it
by hand.
"""

from __future__ import annotations

import logging
from typing import Optional

from remotebox.audit import log_audit_event
from remotebox.core.ownership import (
    OWNERSHIP_SECTION,
    clear_ownership,
    create_claim_marker,
    create_ownership_record,
    get_ownership_status,
    read_claim_marker,
    remove_claim_marker,
    set_ownership,
    update_remote_state,
    write_claim_marker,
)
from remotebox.core.validation import validate_remote_path
from remotebox.identity import Identity, resolve_identity
from remotebox.models import ClaimCode, ClaimResult, OwnershipRecord, ReleaseResult
from remotebox.remote.ssh import RemoteChannel, get_default_channel

logger = logging.getLogger(__name__)

# Initial create plus one retry
MAX_CREATE_ATTEMPTS = 2


async def claim_ownership(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> ClaimResult:
    """
    Claim ownership of a remote project for identity.

    Safe to call repeatedly: the current owner always gets REFRESHED, never a
    conflict.
    """
    check = validate_remote_path(project_path)
    if not check.valid:
        return ClaimResult(success=False, code=ClaimCode.INVALID_PATH, error=check.error)

    identity = resolve_identity(identity)
    channel = channel or get_default_channel()
    target = f"{host}:{project_path}"

    for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
        record = create_ownership_record(identity)
        created = await create_claim_marker(host, project_path, record, channel=channel, identity_file=identity_file)
        if created.success:
            return await _complete_claim(host, project_path, channel, identity, identity_file, record)

        status = await get_ownership_status(
            host, project_path, channel=channel, identity=identity, identity_file=identity_file
        )
        if not status.error and not status.has_owner:
            # A claim that has not been merged yet is named by the marker
            status = await read_claim_marker(
                host, project_path, channel=channel, identity=identity, identity_file=identity_file
            )
        if status.error:
            logger.warning(f"Claim of {target} aborted, could not read state: {status.error}")
            return ClaimResult(success=False, code=ClaimCode.TRANSPORT_ERROR, error=status.error)

        if status.has_owner and status.is_owner:
            return await _refresh(host, project_path, channel, identity, identity_file, status.info)

        if status.has_owner:
            return _owned_by_other(target, status.info)

        logger.debug(f"Create of {target} failed but no valid owner found (attempt {attempt})")

    logger.warning(f"Claim of {target} failed twice with no valid owner: concurrent access detected")
    return ClaimResult(
        success=False,
        code=ClaimCode.CONCURRENT_ACCESS,
        error=(
            "Could not claim project: concurrent access detected "
            "(claim marker exists without a valid owner)"
        ),
    )


def _owned_by_other(target: str, info: OwnershipRecord) -> ClaimResult:
    logger.info(f"Claim of {target} refused: owned by {info.owner}@{info.machine}")
    return ClaimResult(
        success=False,
        code=ClaimCode.OWNED_BY_OTHER,
        error=f"Project is owned by {info.owner} on {info.machine}",
        existing=info,
    )


async def _complete_claim(
    host: str,
    project_path: str,
    channel: RemoteChannel,
    identity: Identity,
    identity_file: Optional[str],
    record: OwnershipRecord,
) -> ClaimResult:
    """Merge a freshly created marker's record into the state document."""
    target = f"{host}:{project_path}"
    status = await get_ownership_status(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if status.has_owner and not status.is_owner:
        # Document names an owner whose marker went missing; restore it
        await write_claim_marker(host, project_path, status.info, channel=channel, identity_file=identity_file)
        return _owned_by_other(target, status.info)

    error = status.error
    if not error:
        written = await update_remote_state(
            host, project_path, OWNERSHIP_SECTION, record.model_dump(), channel=channel, identity_file=identity_file
        )
        if not written.success:
            error = written.error or "Failed to record ownership"
    if error:
        removed = await remove_claim_marker(host, project_path, channel=channel, identity_file=identity_file)
        if not removed.success:
            logger.warning(f"Could not remove claim marker of {target}: {removed.error}")
        logger.warning(f"Claim of {target} aborted: {error}")
        return ClaimResult(success=False, code=ClaimCode.TRANSPORT_ERROR, error=error)

    if status.has_owner:
        # Already ours in the document, only the marker was missing
        return ClaimResult(success=True, code=ClaimCode.REFRESHED, record=record, existing=status.info)

    logger.info(f"Claimed {target} for {identity}")
    log_audit_event("claim", {"host": host, "path": project_path}, identity)
    return ClaimResult(success=True, code=ClaimCode.ACQUIRED, record=record)


async def _refresh(
    host: str,
    project_path: str,
    channel: RemoteChannel,
    identity: Identity,
    identity_file: Optional[str],
    existing: Optional[OwnershipRecord],
) -> ClaimResult:
    # Only the existing owner reaches this point, so a plain write is safe
    result = await set_ownership(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if not result.success:
        return ClaimResult(
            success=False,
            code=ClaimCode.TRANSPORT_ERROR,
            error=result.error,
            existing=existing,
        )
    logger.debug(f"Refreshed ownership of {host}:{project_path}")
    return ClaimResult(success=True, code=ClaimCode.REFRESHED, record=result.record, existing=existing)


async def force_claim(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> ClaimResult:
    """
    Take ownership regardless of the current owner.

    Manual conflict resolution only. The previous owner (if readable) is
    returned in `existing` and written to the audit log.
    """
    check = validate_remote_path(project_path)
    if not check.valid:
        return ClaimResult(success=False, code=ClaimCode.INVALID_PATH, error=check.error)

    identity = resolve_identity(identity)
    channel = channel or get_default_channel()

    previous = await get_ownership_status(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if not previous.error and not previous.has_owner:
        previous = await read_claim_marker(
            host, project_path, channel=channel, identity=identity, identity_file=identity_file
        )
    if previous.error:
        return ClaimResult(success=False, code=ClaimCode.TRANSPORT_ERROR, error=previous.error)

    result = await set_ownership(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if not result.success:
        return ClaimResult(success=False, code=ClaimCode.TRANSPORT_ERROR, error=result.error, existing=previous.info)

    if previous.has_owner and not previous.is_owner:
        logger.warning(
            f"Forced ownership of {host}:{project_path} away from {previous.info.owner}@{previous.info.machine}"
        )
    log_audit_event(
        "force_claim",
        {
            "host": host,
            "path": project_path,
            "previous_owner": previous.info.model_dump() if previous.info else None,
        },
        identity,
    )
    return ClaimResult(success=True, code=ClaimCode.FORCED, record=result.record, existing=previous.info)


async def release_ownership(
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> ReleaseResult:
    """Give up ownership; someone else's ownership is skipped, not removed."""
    identity = resolve_identity(identity)
    result = await clear_ownership(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if result.success and not result.skipped:
        logger.info(f"Released {host}:{project_path}")
        log_audit_event("release", {"host": host, "path": project_path}, identity)
    return result
