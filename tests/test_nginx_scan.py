"""Tests for the nginx directory scan and its CSV report."""
from __future__ import annotations

import csv
from pathlib import Path

import pytest

from tsmctl.errors import ErrorCode, TsmError
from tsmctl.machines import MachineInfo, MachineInventory
from tsmctl.nginx import scan as scan_module
from tsmctl.nginx.report import REPORT_HEADER
from tsmctl.nginx.scan import (
    DUPLICATE_REASON,
    NO_SERVER_NAMES,
    NOT_A_FILE,
    SiteScanner,
    list_site_files,
)
from tsmctl.state import StateRegistry
from tsmctl.state.registry import RecordCollection, StateRegistryError


def _site(name: str, ip: str = "10.0.0.5", port: int = 3001) -> str:
    return (
        "server {\n"
        f"    server_name {name} www.{name};\n"
        f"    location / {{ proxy_pass http://{ip}:{port}; }}\n"
        "}\n"
    )


@pytest.fixture
def sites_dir(tmp_path: Path) -> Path:
    """Return a sites-available directory with a mix of files."""
    directory = tmp_path / "sites-available"
    directory.mkdir()
    (directory / "default").write_text(_site("ignored.example.com"), encoding="utf-8")
    (directory / "alpha.example.com").write_text(_site("alpha.example.com"), encoding="utf-8")
    (directory / "beta.example.com").write_text(
        _site("beta.example.com", ip="10.0.0.99", port=4000), encoding="utf-8"
    )
    (directory / "static-only").write_text("server { listen 80; }\n", encoding="utf-8")
    return directory


@pytest.fixture
def scanner(tmp_path: Path, registry: StateRegistry) -> SiteScanner:
    """Return a scanner whose registry knows two machines."""
    registry.machines.create(
        {"public_id": "nginx-host", "machine_name": "edge", "local_ip_address": "10.0.0.1"}
    )
    registry.machines.create(
        {"public_id": "app-host", "machine_name": "apps", "local_ip_address": "10.0.0.5"}
    )
    machines = MachineInventory(registry)
    return SiteScanner(registry=registry, machines=machines, report_dir=tmp_path / "reports")


def _report_rows(path: Path) -> list[list[str]]:
    with path.open(encoding="utf-8", newline="") as handle:
        return list(csv.reader(handle))


def test_scan_classifies_files(
    sites_dir: Path,
    scanner: SiteScanner,
    registry: StateRegistry,
) -> None:
    """New files are registered, name-less files are errors and ``default`` is skipped."""
    host = registry.machines.find_one({"public_id": "nginx-host"})
    assert host is not None

    result = scanner.scan(sites_dir, nginx_host=host)

    new_entries = sorted(result.new_entries, key=lambda entry: entry.file_name)
    assert [entry.file_name for entry in new_entries] == [
        "alpha.example.com",
        "beta.example.com",
    ]
    assert [entry.message for entry in result.errors] == [NO_SERVER_NAMES]
    assert result.duplicates == []
    assert result.scanned == 3

    alpha, beta = new_entries
    assert alpha.app_host_machine_found is True
    assert beta.app_host_machine_found is False

    record = registry.sites.find_one({"server_name": "alpha.example.com"})
    assert record is not None
    assert record["additional_server_names"] == ["www.alpha.example.com"]
    assert record["port_number"] == 3001
    assert record["app_host_machine_public_id"] == "app-host"
    assert record["nginx_host_machine_public_id"] == "nginx-host"
    assert record["store_directory"] == str(sites_dir)
    assert registry.sites.find_one({"server_name": "ignored.example.com"}) is None


def test_rescan_reports_duplicates_once(
    sites_dir: Path,
    scanner: SiteScanner,
    registry: StateRegistry,
) -> None:
    """A second scan registers nothing and lists each duplicate exactly once."""
    host = registry.machines.find_one({"public_id": "nginx-host"})
    assert host is not None
    scanner.scan(sites_dir, nginx_host=host)

    result = scanner.scan(sites_dir, nginx_host=host)

    assert result.new_entries == []
    assert sorted(entry.file_name for entry in result.duplicates) == [
        "alpha.example.com",
        "beta.example.com",
    ]
    assert {entry.message for entry in result.duplicates} == {DUPLICATE_REASON}
    assert len(registry.sites.find()) == 2

    assert result.report_path is not None
    rows = _report_rows(result.report_path)
    assert tuple(rows[0]) == REPORT_HEADER
    body = rows[1:]
    assert [row[0] for row in body] == ["1", "2", "3"]
    assert [row[1] for row in body].count("alpha.example.com") == 1
    assert [row[2] for row in body] == ["success", "success", "fail"]
    assert body[0][3] == DUPLICATE_REASON
    assert body[2][3] == NO_SERVER_NAMES


def test_scan_defaults_to_current_machine(
    sites_dir: Path,
    scanner: SiteScanner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Without an explicit host the scan looks this machine up by IP."""
    monkeypatch.setattr(
        "tsmctl.machines.current_machine_info",
        lambda: MachineInfo(machine_name="edge", local_ip_address="10.0.0.1"),
    )

    result = scanner.scan(sites_dir)

    assert result.nginx_host_machine_public_id == "nginx-host"
    assert result.current_machine_ip == "10.0.0.1"


def test_scan_unknown_current_machine(
    sites_dir: Path,
    scanner: SiteScanner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unregistered host fails before any file is read."""
    monkeypatch.setattr(
        "tsmctl.machines.current_machine_info",
        lambda: MachineInfo(machine_name="stray", local_ip_address="192.168.1.50"),
    )

    with pytest.raises(TsmError) as excinfo:
        scanner.scan(sites_dir)

    assert excinfo.value.code is ErrorCode.MACHINE_NOT_FOUND
    assert "192.168.1.50" in (excinfo.value.details or "")


def test_scan_missing_directory(tmp_path: Path, scanner: SiteScanner) -> None:
    """A missing directory is a 404."""
    with pytest.raises(TsmError) as excinfo:
        scanner.scan(tmp_path / "nope", nginx_host={"public_id": "nginx-host"})

    assert excinfo.value.code is ErrorCode.NGINX_DIRECTORY_NOT_FOUND
    assert excinfo.value.status == 404


def test_scan_denied_directory(
    sites_dir: Path,
    scanner: SiteScanner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unlistable directory is a 403."""
    monkeypatch.setattr(
        scan_module, "probe_path", lambda path, directory=False: scan_module.PathState.DENIED
    )

    with pytest.raises(TsmError) as excinfo:
        scanner.scan(sites_dir, nginx_host={"public_id": "nginx-host"})

    assert excinfo.value.code is ErrorCode.NGINX_DIRECTORY_PERMISSION_DENIED


def test_unreadable_file_is_error_entry(
    sites_dir: Path,
    scanner: SiteScanner,
) -> None:
    """A file that cannot be decoded is recorded as an error, not a crash."""
    (sites_dir / "binary").write_bytes(b"\xff\xfe\x00")

    result = scanner.scan(sites_dir, nginx_host={"public_id": "nginx-host"})

    assert "binary" in [entry.file_name for entry in result.errors]


def test_report_failure_does_not_fail_scan(
    tmp_path: Path,
    sites_dir: Path,
    registry: StateRegistry,
) -> None:
    """When the report cannot be written the scan still succeeds."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    scanner = SiteScanner(
        registry=registry,
        machines=MachineInventory(registry),
        report_dir=blocker / "reports",
    )

    result = scanner.scan(sites_dir, nginx_host={"public_id": "nginx-host"})

    assert result.report_path is None
    assert len(result.new_entries) == 2


def test_listing_skips_backups_and_temp_files(sites_dir: Path) -> None:
    """Backups, dotfiles and the default entry never become site candidates."""
    (sites_dir / "alpha.example.com.backup.1700000000000000000").write_text(
        _site("alpha.example.com"), encoding="utf-8"
    )
    (sites_dir / ".alpha.example.com.k3j2").write_text("partial", encoding="utf-8")
    names = [path.name for path in list_site_files(sites_dir)]

    assert sorted(names) == ["alpha.example.com", "beta.example.com", "static-only"]
    assert names == [
        path.name
        for path in sites_dir.iterdir()
        if path.name in {"alpha.example.com", "beta.example.com", "static-only"}
    ]


def test_directory_is_error_entry(sites_dir: Path, scanner: SiteScanner) -> None:
    """A subdirectory of sites-available is reported rather than skipped."""
    (sites_dir / "snippets").mkdir()

    result = scanner.scan(sites_dir, nginx_host={"public_id": "nginx-host"})

    assert {"file_name": "snippets", "error": NOT_A_FILE} in [
        entry.to_dict() for entry in result.errors
    ]
    assert len(result.new_entries) == 2


def test_registry_failure_only_affects_one_file(
    sites_dir: Path,
    scanner: SiteScanner,
    registry: StateRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A registry error while registering one file becomes an error entry."""
    original_create = RecordCollection.create

    def flaky_create(self: RecordCollection, document: dict[str, object]) -> dict[str, object]:
        if document.get("server_name") == "beta.example.com":
            raise StateRegistryError("Failed writing registry file", details="disk full")
        return original_create(self, document)

    monkeypatch.setattr(RecordCollection, "create", flaky_create)

    result = scanner.scan(sites_dir, nginx_host={"public_id": "nginx-host"})

    assert [entry.file_name for entry in result.new_entries] == ["alpha.example.com"]
    assert {"file_name": "beta.example.com", "error": "Failed writing registry file"} in [
        entry.to_dict() for entry in result.errors
    ]
    assert registry.sites.find_one({"server_name": "beta.example.com"}) is None
    assert result.report_path is not None
