"""Filesystem probes that separate "missing" from "not accessible"."""
from __future__ import annotations

import os
import stat
from enum import Enum
from pathlib import Path


class PathState(str, Enum):
    """Outcome of probing a path."""

    PRESENT = "present"
    MISSING = "missing"
    DENIED = "denied"


def probe_path(path: Path, *, directory: bool = False) -> PathState:
    """Classify *path* as present, missing, or permission denied.

    Directories must also be traversable; a non-directory at a path expected
    to be a directory counts as missing.
    """
    try:
        info = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        return PathState.MISSING
    except PermissionError:
        return PathState.DENIED

    if directory:
        if not stat.S_ISDIR(info.st_mode):
            return PathState.MISSING
        mode = os.R_OK | os.X_OK
    else:
        mode = os.R_OK
    if not os.access(path, mode):
        return PathState.DENIED
    return PathState.PRESENT


def classify_os_error(exc: OSError) -> PathState | None:
    """Map an ``OSError`` onto a :class:`PathState` when it has one."""
    if isinstance(exc, (FileNotFoundError, NotADirectoryError)):
        return PathState.MISSING
    if isinstance(exc, PermissionError):
        return PathState.DENIED
    return None


__all__ = ["PathState", "classify_os_error", "probe_path"]
