"""Read the log files applications write under the shared log directory.

Units generated from the packaged templates append to
``<log dir>/<name>.log`` where ``<name>`` is the application name.
"""
from __future__ import annotations

import logging
from collections import deque
from pathlib import Path

from ..errors import ErrorCode, TsmError, validation_error
from ..filesystem import PathState, classify_os_error, probe_path

LOGGER = logging.getLogger(__name__)

LOG_SUFFIX = ".log"


def log_path(log_dir: Path, name: str) -> Path:
    """Return the log file of application *name*; the name must be a plain file stem."""
    stem = str(name).strip()
    if not stem or "/" in stem or stem.startswith("."):
        raise validation_error("Invalid service name", f"'{name}' cannot name a log file")
    return Path(log_dir) / f"{stem}{LOG_SUFFIX}"


def read_service_log(log_dir: Path, name: str, *, lines: int | None = None) -> str:
    """Return the log of *name*, or only its last *lines* lines."""
    if lines is not None and lines < 1:
        raise validation_error("Request validation failed", "lines must be a positive number")
    path = log_path(log_dir, name)

    state = probe_path(Path(log_dir), directory=True)
    if state is PathState.MISSING:
        raise TsmError(
            ErrorCode.LOG_FILE_NOT_FOUND,
            "Log file not found or could not be read",
            status=404,
            details=f"Log directory does not exist: {log_dir}",
        )
    if state is PathState.DENIED:
        raise TsmError(
            ErrorCode.LOG_FILE_PERMISSION_DENIED,
            "Permission denied reading log directory",
            status=403,
            details=str(log_dir),
        )

    LOGGER.debug("Reading log file %s", path)
    try:
        with path.open(encoding="utf-8", errors="replace") as handle:
            if lines is None:
                return handle.read()
            return "".join(deque(handle, maxlen=lines))
    except OSError as exc:
        result = classify_os_error(exc)
        if result is PathState.MISSING:
            raise TsmError(
                ErrorCode.LOG_FILE_NOT_FOUND,
                "Log file not found or could not be read",
                status=404,
                details=f"Log file does not exist: {path}",
            ) from exc
        if result is PathState.DENIED:
            raise TsmError(
                ErrorCode.LOG_FILE_PERMISSION_DENIED,
                "Permission denied reading log file",
                status=403,
                details=str(path),
            ) from exc
        raise TsmError(
            ErrorCode.LOG_FILE_READ_ERROR,
            "Failed to read log file",
            status=500,
            details=f"{path}: {exc}",
        ) from exc


__all__ = ["LOG_SUFFIX", "log_path", "read_service_log"]
