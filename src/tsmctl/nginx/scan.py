"""Scan an nginx sites directory and reconcile it with the site registry."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ..errors import ErrorCode, TsmError
from ..filesystem import PathState, probe_path
from ..machines import MachineInventory
from ..state.registry import StateRegistry
from .parser import parse_nginx_config
from .report import write_scan_report

LOGGER = logging.getLogger(__name__)

NO_SERVER_NAMES = "No server names found in config file"
DUPLICATE_REASON = "Server name already exists in database"
NOT_A_FILE = "Not a regular file"
BACKUP_MARKER = ".backup."

Outcome = Literal["new", "duplicate", "error"]


@dataclass(slots=True, frozen=True)
class ScanEntry:
    """Classification of one file found during a scan."""

    file_name: str
    outcome: Outcome
    server_name: str | None = None
    additional_server_names: tuple[str, ...] = ()
    port_number: int | None = None
    upstream_ip_address: str | None = None
    framework: str | None = None
    message: str | None = None
    public_id: str | None = None
    app_host_machine_found: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        if self.outcome == "error":
            return {"file_name": self.file_name, "error": self.message}
        payload: dict[str, object] = {
            "file_name": self.file_name,
            "server_name": self.server_name,
            "additional_server_names": list(self.additional_server_names),
            "port_number": self.port_number,
            "local_ip_address": self.upstream_ip_address,
            "framework": self.framework,
        }
        if self.outcome == "duplicate":
            payload["reason"] = self.message
        else:
            payload["public_id"] = self.public_id
            payload["app_host_machine_found"] = self.app_host_machine_found
        return payload


@dataclass(slots=True)
class ScanResult:
    """Aggregate outcome of a scan."""

    directory: Path
    nginx_host_machine_public_id: str | None
    current_machine_ip: str | None = None
    new_entries: list[ScanEntry] = field(default_factory=list)
    duplicates: list[ScanEntry] = field(default_factory=list)
    errors: list[ScanEntry] = field(default_factory=list)
    report_path: Path | None = None

    @property
    def scanned(self) -> int:
        """Number of files considered."""
        return len(self.new_entries) + len(self.duplicates) + len(self.errors)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "scanned": self.scanned,
            "new": len(self.new_entries),
            "duplicates": len(self.duplicates),
            "errors": len(self.errors),
            "current_machine_ip": self.current_machine_ip,
            "nginx_host_machine_public_id": self.nginx_host_machine_public_id,
            "report_path": str(self.report_path) if self.report_path else None,
            "new_entries": [entry.to_dict() for entry in self.new_entries],
            "duplicate_entries": [entry.to_dict() for entry in self.duplicates],
            "error_entries": [entry.to_dict() for entry in self.errors],
        }


def list_site_files(directory: Path, *, exclude: str = "default") -> list[Path]:
    """Return the candidate site entries of *directory* in listing order.

    *exclude*, dotfiles (temporary files of an interrupted write) and
    ``<name>.backup.<timestamp>`` copies are skipped. Subdirectories are
    returned so the scan can report them.
    """
    state = probe_path(directory, directory=True)
    if state is PathState.MISSING:
        raise TsmError(
            ErrorCode.NGINX_DIRECTORY_NOT_FOUND,
            "Nginx directory not found",
            status=404,
            details=f"{directory} does not exist",
        )
    if state is PathState.DENIED:
        raise TsmError(
            ErrorCode.NGINX_DIRECTORY_PERMISSION_DENIED,
            "Permission denied reading nginx directory",
            status=403,
            details=f"Cannot list {directory}",
        )
    return [
        path
        for path in directory.iterdir()
        if path.name != exclude
        and not path.name.startswith(".")
        and BACKUP_MARKER not in path.name
    ]


@dataclass(slots=True)
class SiteScanner:
    """Parse every site file in a directory and register the new ones."""

    registry: StateRegistry
    machines: MachineInventory
    report_dir: Path
    default_entry: str = "default"

    def scan(
        self,
        directory: Path,
        *,
        nginx_host: Mapping[str, Any] | None = None,
    ) -> ScanResult:
        """Scan *directory* on behalf of *nginx_host* (this machine by default)."""
        if nginx_host is None:
            nginx_host = self.machines.current_machine()

        files = list_site_files(directory, exclude=self.default_entry)
        result = ScanResult(
            directory=directory,
            nginx_host_machine_public_id=nginx_host.get("public_id"),
            current_machine_ip=nginx_host.get("local_ip_address"),
        )
        for path in files:
            entry = self._scan_file(path, directory, nginx_host)
            if entry.outcome == "new":
                result.new_entries.append(entry)
            elif entry.outcome == "duplicate":
                result.duplicates.append(entry)
            else:
                result.errors.append(entry)

        result.report_path = write_scan_report(
            self.report_dir, result.new_entries, result.duplicates, result.errors
        )
        LOGGER.info(
            "Scanned %d files in %s: %d new, %d duplicates, %d errors",
            result.scanned,
            directory,
            len(result.new_entries),
            len(result.duplicates),
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    def _scan_file(
        self,
        path: Path,
        directory: Path,
        nginx_host: Mapping[str, Any],
    ) -> ScanEntry:
        if path.is_dir():
            return ScanEntry(file_name=path.name, outcome="error", message=NOT_A_FILE)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Cannot read %s: %s", path, exc)
            return ScanEntry(file_name=path.name, outcome="error", message=str(exc))

        parsed = parse_nginx_config(content)
        server_name = parsed.primary_server_name
        if server_name is None:
            return ScanEntry(file_name=path.name, outcome="error", message=NO_SERVER_NAMES)

        details = {
            "file_name": path.name,
            "server_name": server_name,
            "additional_server_names": tuple(parsed.additional_server_names),
            "port_number": parsed.listen_port,
            "upstream_ip_address": parsed.upstream_ip_address,
            "framework": parsed.framework,
        }

        try:
            if self.registry.sites.find_one({"server_name": server_name}) is not None:
                return ScanEntry(outcome="duplicate", message=DUPLICATE_REASON, **details)

            app_host = None
            if parsed.upstream_ip_address:
                app_host = self.machines.find_by_ip(parsed.upstream_ip_address)

            record = self.registry.sites.create(
                {
                    "public_id": str(uuid.uuid4()),
                    "server_name": server_name,
                    "additional_server_names": list(parsed.additional_server_names),
                    "port_number": parsed.listen_port or 0,
                    "app_host_machine_public_id": app_host.get("public_id") if app_host else None,
                    "nginx_host_machine_public_id": nginx_host.get("public_id"),
                    "framework": parsed.framework,
                    "store_directory": str(directory),
                }
            )
        except TsmError as exc:
            LOGGER.warning("Cannot register %s: %s", path, exc)
            return ScanEntry(file_name=path.name, outcome="error", message=exc.message)
        return ScanEntry(
            outcome="new",
            public_id=record["public_id"],
            app_host_machine_found=app_host is not None,
            **details,
        )


__all__ = [
    "BACKUP_MARKER",
    "DUPLICATE_REASON",
    "NOT_A_FILE",
    "NO_SERVER_NAMES",
    "ScanEntry",
    "ScanResult",
    "SiteScanner",
    "list_site_files",
]
