"""Pydantic models for leases, ownership records and operation results."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError, field_validator


# ============================================================================
# Timestamps
# ============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(moment: datetime) -> str:
    """Render a datetime as RFC3339 UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC3339 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: If the string is not a timestamp
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_rfc3339(value: str) -> str:
    try:
        parse_rfc3339(value)
    except ValueError as e:
        raise ValueError(f"not an RFC3339 timestamp: {value!r}") from e
    return value


# ============================================================================
# Persisted records
# ============================================================================

class SessionLease(BaseModel):
    """Time-bounded local claim that a machine is actively using a project.

    Timestamps stay strings so the integrity tag is computed over exactly the
    bytes that were stored.
    """

    model_config = ConfigDict(extra="ignore")

    machine: StrictStr = Field(..., min_length=1, description="Hostname of the lease holder")
    user: StrictStr = Field(..., min_length=1, description="OS username of the lease holder")
    timestamp: StrictStr = Field(..., description="Creation time (RFC3339)")
    pid: StrictInt = Field(..., description="Creating process id (diagnostic only)")
    expires: StrictStr = Field(..., description="Time after which the lease is void (RFC3339)")
    hash: Optional[StrictStr] = Field(None, description="HMAC-SHA256 integrity tag")

    @field_validator("timestamp", "expires")
    @classmethod
    def check_timestamps(cls, value: str) -> str:
        return _require_rfc3339(value)

    @property
    def expires_at(self) -> datetime:
        return parse_rfc3339(self.expires)

    @property
    def created_at(self) -> datetime:
        return parse_rfc3339(self.timestamp)

    def signing_payload(self) -> str:
        """Canonical JSON array of the five signed fields."""
        fields = [self.machine, self.user, self.timestamp, self.pid, self.expires]
        return json.dumps(fields, separators=(",", ":"), ensure_ascii=False)


class OwnershipRecord(BaseModel):
    """Remote, authoritative claim of which user/machine may mutate a project."""

    model_config = ConfigDict(extra="ignore")

    owner: StrictStr = Field(..., min_length=1, description="Username that claimed ownership")
    machine: StrictStr = Field(..., min_length=1, description="Hostname that claimed ownership")
    created: StrictStr = Field(..., description="Claim time (RFC3339)")

    @field_validator("created")
    @classmethod
    def check_created(cls, value: str) -> str:
        return _require_rfc3339(value)

    def describe(self) -> str:
        return f"'{self.owner}' on {self.machine}"


def _parse_section(model: type[BaseModel], data: Any) -> Optional[BaseModel]:
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError:
        return None


class RemoteProjectState(BaseModel):
    """The per-project state document: ownership plus an optional session mirror.

    The same shape is used for the local state file and the remote one.
    """

    ownership: Optional[OwnershipRecord] = None
    session: Optional[SessionLease] = None

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "RemoteProjectState":
        """Parse each section on its own; an invalid section reads as absent."""
        return cls(
            ownership=_parse_section(OwnershipRecord, document.get("ownership")),
            session=_parse_section(SessionLease, document.get("session")),
        )

    def is_empty(self) -> bool:
        return self.ownership is None and self.session is None


# ============================================================================
# Transport
# ============================================================================

class RemoteCommandResult(BaseModel):
    """Outcome of one command run on a remote host."""

    success: bool
    stdout: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None


# ============================================================================
# Operation results
# ============================================================================

class ClaimCode(str, Enum):
    ACQUIRED = "acquired"
    REFRESHED = "refreshed"
    FORCED = "forced"
    OWNED_BY_OTHER = "owned_by_other"
    CONCURRENT_ACCESS = "concurrent_access"
    TRANSPORT_ERROR = "transport_error"
    INVALID_PATH = "invalid_path"


class AuthorizationCode(str, Enum):
    UNOWNED = "unowned"
    OWNER = "owner"
    READ_ONLY = "read_only"
    OWNED_BY_OTHER = "owned_by_other"
    CONCURRENT_ACCESS = "concurrent_access"
    TRANSPORT_ERROR = "transport_error"
    INVALID_PATH = "invalid_path"


class OwnershipStatus(BaseModel):
    """Result of reading the ownership section of a remote project.

    has_owner=False with error set means the state could not be read at all,
    which is not the same thing as "nobody owns this".
    """

    has_owner: bool
    is_owner: bool = False
    info: Optional[OwnershipRecord] = None
    error: Optional[str] = None
    corrupt: bool = False

    @property
    def transport_failed(self) -> bool:
        return self.error is not None


class SetOwnershipResult(BaseModel):
    success: bool
    error: Optional[str] = None
    record: Optional[OwnershipRecord] = None


class ReleaseResult(BaseModel):
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    owner_info: Optional[OwnershipRecord] = None


class ClaimResult(BaseModel):
    success: bool
    code: ClaimCode
    error: Optional[str] = None
    record: Optional[OwnershipRecord] = None
    existing: Optional[OwnershipRecord] = None


class AuthorizationResult(BaseModel):
    authorized: bool
    code: AuthorizationCode
    error: Optional[str] = None
    owner_info: Optional[OwnershipRecord] = None


class SessionConflict(BaseModel):
    has_conflict: bool
    existing_session: Optional[SessionLease] = None


class ProjectOwnership(BaseModel):
    """One row of a remote ownership listing."""

    project: str
    status: OwnershipStatus
