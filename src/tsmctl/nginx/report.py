"""CSV status reports summarising nginx directory scans."""
from __future__ import annotations

import csv
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ErrorCode, TsmError

if TYPE_CHECKING:
    from .scan import ScanEntry

LOGGER = logging.getLogger(__name__)

REPORT_PREFIX = "nginxConfigFileScanStatusSummary_"
REPORT_HEADER = (
    "id",
    "fileName",
    "status",
    "errorMessage",
    "serverName",
    "portNumber",
    "localIpAddress",
)


@dataclass(slots=True, frozen=True)
class ReportFile:
    """A report available for retrieval."""

    name: str
    path: Path
    size: int
    modified: datetime

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "size": self.size,
            "modified": self.modified.isoformat(),
        }


def report_filename(now: datetime | None = None) -> str:
    """Return the report name for *now*, safe for every filesystem."""
    moment = now or datetime.now(tz=UTC)
    stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"{REPORT_PREFIX}{stamp.replace(':', '-').replace('.', '-')}.csv"


def _row(entry_id: int, entry: ScanEntry) -> list[str]:
    if entry.outcome == "error":
        message = entry.message or "Unknown error"
        return [str(entry_id), entry.file_name, "fail", message, "", "", ""]
    return [
        str(entry_id),
        entry.file_name,
        "success",
        entry.message or "",
        entry.server_name or "",
        str(entry.port_number) if entry.port_number else "",
        entry.upstream_ip_address or "",
    ]


def write_scan_report(
    report_dir: Path,
    new_entries: Sequence[ScanEntry],
    duplicates: Sequence[ScanEntry],
    errors: Sequence[ScanEntry],
    *,
    now: datetime | None = None,
) -> Path | None:
    """Write one CSV row per scanned file and return the report path.

    Rows are ordered new, then duplicate, then error entries with a running
    id. Failures are logged and reported as ``None``; they never fail a scan.
    """
    path = report_dir / report_filename(now)
    try:
        report_dir.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(REPORT_HEADER)
            entries = [*new_entries, *duplicates, *errors]
            for entry_id, entry in enumerate(entries, start=1):
                writer.writerow(_row(entry_id, entry))
    except OSError as exc:
        LOGGER.error("Failed to write scan report %s: %s", path, exc)
        return None
    LOGGER.info("Nginx scan report saved: %s", path)
    return path


def list_reports(report_dir: Path) -> list[ReportFile]:
    """Return the CSV reports in *report_dir*, newest first."""
    if not report_dir.is_dir():
        raise TsmError(
            ErrorCode.REPORT_DIRECTORY_NOT_FOUND,
            "Report directory not found",
            status=404,
            details=f"{report_dir} does not exist",
        )
    reports: list[ReportFile] = []
    for path in report_dir.iterdir():
        if not path.is_file() or path.suffix != ".csv":
            continue
        info = path.stat()
        reports.append(
            ReportFile(
                name=path.name,
                path=path,
                size=info.st_size,
                modified=datetime.fromtimestamp(info.st_mtime, tz=UTC),
            )
        )
    reports.sort(key=lambda report: (report.modified, report.name), reverse=True)
    return reports


__all__ = ["REPORT_HEADER", "ReportFile", "list_reports", "report_filename", "write_scan_report"]
