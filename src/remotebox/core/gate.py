"""
Authorization Gate - the check every remote-mutating command runs first.

Policy:
- ownership read failed            -> denied (TRANSPORT_ERROR), fail closed
- no ownership record              -> authorized (UNOWNED)
- record matches user AND machine  -> authorized (OWNER)
- record belongs to someone else   -> denied (OWNED_BY_OTHER), names the owner

"Nobody owns this" and "I could not find out" are different answers and are
reported with different codes. acquire_write_access adds one more denial,
CONCURRENT_ACCESS, when the claim it makes for an unowned project finds a
claim marker that names nobody.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from remotebox.audit import log_audit_event
from remotebox.core.claim import claim_ownership
from remotebox.core.ownership import get_ownership_status
from remotebox.core.validation import validate_remote_path
from remotebox.identity import Identity, resolve_identity
from remotebox.models import AuthorizationCode, AuthorizationResult, ClaimCode, OwnershipStatus
from remotebox.remote.ssh import RemoteChannel

logger = logging.getLogger(__name__)


class GuardedOperation(str, Enum):
    """Commands that touch a remote project."""

    PUSH = "push"
    RM_REMOTE = "rm-remote"
    ENCRYPT_ENABLE = "encrypt-enable"
    ENCRYPT_DISABLE = "encrypt-disable"
    CLONE = "clone"
    BROWSE = "browse"
    STATUS = "status"
    LIST = "list"


# Operations that change the canonical remote copy
MUTATING_OPERATIONS = frozenset({
    GuardedOperation.PUSH,
    GuardedOperation.RM_REMOTE,
    GuardedOperation.ENCRYPT_ENABLE,
    GuardedOperation.ENCRYPT_DISABLE,
})


def requires_authorization(operation: GuardedOperation) -> bool:
    return operation in MUTATING_OPERATIONS


def evaluate_authorization(status: OwnershipStatus) -> AuthorizationResult:
    """Apply the gate policy to an ownership read."""
    if status.error:
        return AuthorizationResult(
            authorized=False,
            code=AuthorizationCode.TRANSPORT_ERROR,
            error=f"Could not verify project ownership: {status.error}",
        )

    if not status.has_owner:
        return AuthorizationResult(authorized=True, code=AuthorizationCode.UNOWNED)

    info = status.info
    if status.is_owner:
        return AuthorizationResult(authorized=True, code=AuthorizationCode.OWNER, owner_info=info)

    return AuthorizationResult(
        authorized=False,
        code=AuthorizationCode.OWNED_BY_OTHER,
        error=f"Project owned by '{info.owner}' (machine: {info.machine})",
        owner_info=info,
    )


async def authorize(
    operation: GuardedOperation,
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> AuthorizationResult:
    """
    Decide whether operation may run against host:project_path.

    Read-only operations are authorized without a round trip.
    """
    if not requires_authorization(operation):
        return AuthorizationResult(authorized=True, code=AuthorizationCode.READ_ONLY)

    check = validate_remote_path(project_path)
    if not check.valid:
        return AuthorizationResult(authorized=False, code=AuthorizationCode.INVALID_PATH, error=check.error)

    identity = resolve_identity(identity)
    status = await get_ownership_status(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    result = evaluate_authorization(status)

    if not result.authorized:
        _record_denial(operation, host, project_path, result, identity)
    return result


def _record_denial(
    operation: GuardedOperation,
    host: str,
    project_path: str,
    result: AuthorizationResult,
    identity: Identity,
) -> None:
    logger.warning(f"{operation.value} on {host}:{project_path} denied: {result.error}")
    log_audit_event(
        "deny",
        {
            "operation": operation.value,
            "host": host,
            "path": project_path,
            "code": result.code.value,
            "error": result.error,
        },
        identity,
    )


async def acquire_write_access(
    operation: GuardedOperation,
    host: str,
    project_path: str,
    *,
    channel: Optional[RemoteChannel] = None,
    identity: Optional[Identity] = None,
    identity_file: Optional[str] = None,
) -> AuthorizationResult:
    """
    Authorize operation and, if the project is unowned, claim it.

    Any claim that does not end with identity as owner turns into a denial:
    a claim lost to another machine names the winner, and a claim marker
    without a valid owner is reported as CONCURRENT_ACCESS for manual
    resolution (`rbox owner claim --force`).
    """
    identity = resolve_identity(identity)
    result = await authorize(
        operation, host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if not result.authorized or result.code != AuthorizationCode.UNOWNED:
        return result

    claim = await claim_ownership(
        host, project_path, channel=channel, identity=identity, identity_file=identity_file
    )
    if claim.success:
        return AuthorizationResult(authorized=True, code=AuthorizationCode.OWNER, owner_info=claim.record)

    if claim.code == ClaimCode.OWNED_BY_OTHER:
        denied = evaluate_authorization(
            OwnershipStatus(has_owner=True, is_owner=False, info=claim.existing)
        )
    elif claim.code == ClaimCode.TRANSPORT_ERROR:
        denied = AuthorizationResult(
            authorized=False,
            code=AuthorizationCode.TRANSPORT_ERROR,
            error=f"Could not verify project ownership: {claim.error}",
        )
    else:
        denied = AuthorizationResult(
            authorized=False,
            code=AuthorizationCode.CONCURRENT_ACCESS,
            error=claim.error,
        )
    _record_denial(operation, host, project_path, denied, identity)
    return denied
