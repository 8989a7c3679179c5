"""
Audit logging for ownership changes and refused writes.

Writes JSON Lines to ~/.remotebox/audit.log when RBOX_AUDIT=1. Each entry has
timestamp, action, user, machine and free-form details. Audit failures are
logged and never interrupt the operation being audited.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from remotebox.config import get_settings
from remotebox.identity import Identity, resolve_identity
from remotebox.models import format_rfc3339, utc_now

logger = logging.getLogger(__name__)

_enabled_override: Optional[bool] = None


def set_audit_enabled(enabled: Optional[bool]) -> None:
    """Force audit logging on/off (tests). None restores the setting."""
    global _enabled_override
    _enabled_override = enabled


def is_audit_enabled() -> bool:
    if _enabled_override is not None:
        return _enabled_override
    return get_settings().audit_enabled


def log_audit_event(action: str, details: Dict[str, Any], identity: Optional[Identity] = None) -> None:
    """
    Append one audit entry.

    Args:
        action: What happened (e.g. "claim", "force_claim", "release", "deny")
        details: Extra context (host, path, previous owner, error)
        identity: Who did it; defaults to the current machine/user
    """
    if not is_audit_enabled():
        return

    identity = resolve_identity(identity)
    entry = {
        "timestamp": format_rfc3339(utc_now()),
        "action": action,
        "user": identity.user,
        "machine": identity.machine,
        "details": details,
    }

    log_path = get_settings().audit_log_path
    try:
        log_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        logger.warning(f"Failed to write audit log {log_path}: {e}")
