"""Validate systemd service units and resolve the application behind them."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from ..errors import ErrorCode, TsmError, validation_error
from ..extractors import extract_assignment
from ..filesystem import PathState, probe_path
from .environment import EnvironmentResolver

LOGGER = logging.getLogger(__name__)

SERVICE_SUFFIX = ".service"
TIMER_SUFFIX = ".timer"
DEFAULT_UNIT_DIR = Path("/etc/systemd/system")


@dataclass(slots=True, frozen=True)
class ServiceUnit:
    """A systemd service unit as tracked on a machine record."""

    filename: str
    name: str | None = None
    working_directory: str | None = None
    timer_filename: str | None = None
    port: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation, omitting unset fields."""
        payload: dict[str, object] = {"filename": self.filename}
        if self.name is not None:
            payload["name"] = self.name
        if self.working_directory is not None:
            payload["working_directory"] = self.working_directory
        if self.timer_filename is not None:
            payload["timer_filename"] = self.timer_filename
        if self.port is not None:
            payload["port"] = self.port
        return payload

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> ServiceUnit:
        """Build a unit from a registry or request mapping."""
        filename = data.get("filename")
        if not isinstance(filename, str):
            raise validation_error("Request validation failed", "filename must be a string")
        port = data.get("port")
        if port is not None and (isinstance(port, bool) or not isinstance(port, int)):
            raise validation_error("Request validation failed", "port must be a number")
        timer = data.get("timer_filename")
        if timer is not None and not isinstance(timer, str):
            raise validation_error("Request validation failed", "timer_filename must be a string")
        name = data.get("name")
        working_directory = data.get("working_directory")
        return cls(
            filename=filename,
            name=name if isinstance(name, str) else None,
            working_directory=working_directory if isinstance(working_directory, str) else None,
            timer_filename=timer,
            port=port,
        )


def check_unit_filename(filename: str, *, suffix: str = SERVICE_SUFFIX) -> str:
    """Return the trimmed *filename* or raise a validation error.

    Runs before any filesystem access.
    """
    trimmed = filename.strip() if isinstance(filename, str) else ""
    if not trimmed:
        raise validation_error("Request validation failed", "filename must be a non-empty string")
    if not trimmed.endswith(suffix):
        raise validation_error(
            "Request validation failed",
            f"filename '{trimmed}' must end with '{suffix}'",
        )
    return trimmed


def require_unit_file(unit_dir: Path, filename: str) -> Path:
    """Return the unit file path, raising 404/403 when it cannot be used."""
    path = unit_dir / filename
    state = probe_path(path)
    if state is PathState.MISSING:
        raise TsmError(
            ErrorCode.SERVICE_FILE_NOT_FOUND,
            "Service file not found",
            status=404,
            details=f"Service file '{filename}' does not exist at {path}",
        )
    if state is PathState.DENIED:
        raise TsmError(
            ErrorCode.SERVICE_FILE_PERMISSION_DENIED,
            "Permission denied accessing service file",
            status=403,
            details=f"Cannot access service file '{filename}' at {path}",
        )
    return path


def read_unit_file(path: Path) -> str:
    """Read a unit file, classifying failures as ``SERVICE_FILE_READ_ERROR``."""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TsmError(
            ErrorCode.SERVICE_FILE_READ_ERROR,
            "Failed to read service file",
            status=400,
            details=f"Permission error or failed to read service file '{path.name}': {exc}",
        ) from exc


def validate_unit(
    unit: ServiceUnit,
    *,
    unit_dir: Path = DEFAULT_UNIT_DIR,
    resolver: EnvironmentResolver | None = None,
) -> ServiceUnit:
    """Validate *unit* and return a copy enriched with name and working directory."""
    filename = check_unit_filename(unit.filename)
    path = require_unit_file(unit_dir, filename)
    content = read_unit_file(path)

    working_directory = extract_assignment(content, "WorkingDirectory")
    if working_directory is None:
        raise TsmError(
            ErrorCode.WORKING_DIRECTORY_NOT_FOUND,
            "WorkingDirectory not found in service file",
            status=400,
            details=f"Service file '{filename}' is missing the WorkingDirectory property",
        )
    LOGGER.debug("Found WorkingDirectory for %s: %s", filename, working_directory)

    directory = Path(working_directory)
    if not directory.is_absolute():
        raise validation_error(
            "WorkingDirectory must be an absolute path",
            f"Service file '{filename}' sets WorkingDirectory={working_directory}",
        )
    state = probe_path(directory, directory=True)
    if state is PathState.MISSING:
        raise TsmError(
            ErrorCode.WORKING_DIRECTORY_NOT_FOUND,
            "WorkingDirectory does not exist",
            status=404,
            details=(
                f"WorkingDirectory '{working_directory}' specified in service file "
                f"'{filename}' does not exist"
            ),
        )
    if state is PathState.DENIED:
        raise TsmError(
            ErrorCode.WORKING_DIRECTORY_PERMISSION_DENIED,
            "Permission denied accessing WorkingDirectory",
            status=403,
            details=f"Cannot access WorkingDirectory '{working_directory}' for '{filename}'",
        )

    resolver = resolver or EnvironmentResolver()
    resolved = resolver.resolve(directory)
    LOGGER.debug(
        "Resolved %s for %s from %s: %s",
        resolver.variable,
        filename,
        resolved.source_file,
        resolved.identity,
    )
    return replace(
        unit,
        filename=filename,
        name=resolved.identity,
        working_directory=working_directory,
    )


__all__ = [
    "DEFAULT_UNIT_DIR",
    "SERVICE_SUFFIX",
    "TIMER_SUFFIX",
    "ServiceUnit",
    "check_unit_filename",
    "read_unit_file",
    "require_unit_file",
    "validate_unit",
]
