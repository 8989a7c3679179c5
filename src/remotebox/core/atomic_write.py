"""Local atomic file writes (temp file in the same directory + rename)."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional


def write_file_atomic(path: Path, content: str, file_mode: Optional[int] = None) -> None:
    """
    Write text to path atomically.

    The parent directory is created if needed. The temp file is removed if
    anything fails before the rename. Because the final step is a rename, a
    read-only target does not block the write on POSIX.

    Args:
        path: Destination file
        content: Text to write (UTF-8)
        file_mode: Optional mode applied to the temp file before the rename
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=f".{target.name}.tmp.",
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        if file_mode is not None:
            os.chmod(temp_name, file_mode)
        os.replace(temp_name, target)
    except Exception:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


def write_json_atomic(path: Path, payload: Mapping[str, Any], file_mode: Optional[int] = None) -> None:
    write_file_atomic(path, json.dumps(payload, indent=2) + "\n", file_mode=file_mode)
