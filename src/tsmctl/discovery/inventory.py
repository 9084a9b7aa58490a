"""Build the service unit inventory from the sudoers command CSV."""
from __future__ import annotations

import csv
import io
import logging
from pathlib import Path

from ..errors import ErrorCode, TsmError
from ..extractors import extract_port
from ..filesystem import PathState, classify_os_error, probe_path
from .units import DEFAULT_UNIT_DIR, SERVICE_SUFFIX, TIMER_SUFFIX, ServiceUnit, read_unit_file

LOGGER = logging.getLogger(__name__)

# Column layout: user,runas,tag,cmd,action,unit
DEFAULT_UNIT_COLUMN = 5
PORT_DIGITS = 4


def read_inventory_csv(csv_path: Path) -> str:
    """Return the CSV text, classifying read failures."""
    try:
        return csv_path.read_text(encoding="utf-8")
    except OSError as exc:
        state = classify_os_error(exc)
        if state is PathState.MISSING:
            raise TsmError(
                ErrorCode.INVENTORY_FILE_NOT_FOUND,
                "Inventory CSV not found",
                status=404,
                details=f"{csv_path} does not exist",
            ) from exc
        if state is PathState.DENIED:
            raise TsmError(
                ErrorCode.INVENTORY_FILE_PERMISSION_DENIED,
                "Permission denied reading inventory CSV",
                status=403,
                details=f"Cannot read {csv_path}",
            ) from exc
        raise TsmError(
            ErrorCode.INVENTORY_FILE_READ_ERROR,
            "Failed to read inventory CSV",
            status=500,
            details=f"{csv_path}: {exc}",
        ) from exc
    except UnicodeDecodeError as exc:
        raise TsmError(
            ErrorCode.INVENTORY_FILE_READ_ERROR,
            "Failed to read inventory CSV",
            status=500,
            details=f"{csv_path}: {exc}",
        ) from exc


def collect_unit_names(text: str, *, unit_column: int = DEFAULT_UNIT_COLUMN) -> list[str]:
    """Return unique unit names from *text* in first-seen order.

    The first row is a header. Rows too short to hold the unit column, or
    with a blank value there, are skipped.
    """
    names: list[str] = []
    seen: set[str] = set()
    reader = csv.reader(io.StringIO(text))
    next(reader, None)
    for row in reader:
        if len(row) <= unit_column:
            continue
        name = row[unit_column].strip()
        if not name or name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


def _parse_port(content: str, filename: str) -> int | None:
    digits = extract_port(content)
    if digits is None:
        return None
    if len(digits) != PORT_DIGITS:
        raise TsmError(
            ErrorCode.INVALID_PORT_FORMAT,
            "Invalid port format",
            status=400,
            details=f"Port '{digits}' in '{filename}' must be exactly {PORT_DIGITS} digits",
        )
    return int(digits)


def build_unit_inventory(
    csv_path: Path,
    *,
    unit_dir: Path = DEFAULT_UNIT_DIR,
    unit_column: int = DEFAULT_UNIT_COLUMN,
) -> list[ServiceUnit]:
    """Return the service units named in *csv_path*, paired with their timers.

    The build is all-or-nothing: an orphaned timer, a missing unit file or a
    malformed port fails the whole inventory.
    """
    names = collect_unit_names(read_inventory_csv(csv_path), unit_column=unit_column)
    services = [name for name in names if name.endswith(SERVICE_SUFFIX)]
    timers = [name for name in names if name.endswith(TIMER_SUFFIX)]
    ignored = len(names) - len(services) - len(timers)
    if ignored:
        LOGGER.debug("Ignoring %d non-unit entries in %s", ignored, csv_path)

    service_set = set(services)
    timer_for: dict[str, str] = {}
    for timer in timers:
        service = timer[: -len(TIMER_SUFFIX)] + SERVICE_SUFFIX
        if service not in service_set:
            raise TsmError(
                ErrorCode.ORPHANED_TIMER_FILE,
                "Timer without matching service",
                status=400,
                details=f"Timer '{timer}' has no matching service '{service}'",
            )
        timer_for.setdefault(service, timer)

    for service in services:
        state = probe_path(unit_dir / service)
        if state is PathState.MISSING:
            raise TsmError(
                ErrorCode.SERVICE_FILE_NOT_FOUND,
                "Service file not found",
                status=404,
                details=f"Service file '{service}' does not exist in {unit_dir}",
            )
        if state is PathState.DENIED:
            raise TsmError(
                ErrorCode.SERVICE_FILE_PERMISSION_DENIED,
                "Permission denied accessing service file",
                status=403,
                details=f"Cannot access service file '{service}' in {unit_dir}",
            )

    inventory: list[ServiceUnit] = []
    for service in services:
        content = read_unit_file(unit_dir / service)
        inventory.append(
            ServiceUnit(
                filename=service,
                timer_filename=timer_for.get(service),
                port=_parse_port(content, service),
            )
        )
    LOGGER.debug("Built inventory of %d units from %s", len(inventory), csv_path)
    return inventory


__all__ = [
    "DEFAULT_UNIT_COLUMN",
    "build_unit_inventory",
    "collect_unit_names",
    "read_inventory_csv",
]
