"""Conflict Detector - warn before starting work another machine holds a lease on.

Purely local: it reads the lease file and never touches the network. The lease
may have been written elsewhere when the project directory itself is synced.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from remotebox.core.session import read_lease
from remotebox.identity import Identity, resolve_identity
from remotebox.models import SessionConflict

logger = logging.getLogger(__name__)


def check_session_conflict(
    project_path: Union[str, Path],
    identity: Optional[Identity] = None,
) -> SessionConflict:
    """
    Check whether a different machine has an active lease on the project.

    No lease (absent, corrupt or expired) or a lease from this machine is not
    a conflict.
    """
    lease = read_lease(project_path)
    if lease is None:
        return SessionConflict(has_conflict=False)

    identity = resolve_identity(identity)
    if lease.machine == identity.machine:
        return SessionConflict(has_conflict=False)

    logger.debug(f"Active session for {project_path} held by {lease.user}@{lease.machine}")
    return SessionConflict(has_conflict=True, existing_session=lease)
