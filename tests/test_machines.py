"""Tests for the machine inventory."""
from __future__ import annotations

import socket
from pathlib import Path
from types import SimpleNamespace

import pytest

from tsmctl import machines
from tsmctl.discovery.units import ServiceUnit
from tsmctl.errors import ErrorCode, TsmError
from tsmctl.machines import MachineInfo, MachineInventory, current_machine_info
from tsmctl.providers.systemd import SystemdError, UnitStatus
from tsmctl.state import StateRegistry

HOST = MachineInfo(machine_name="app-01", local_ip_address="10.0.0.5")


def _address(family: int, address: str) -> SimpleNamespace:
    return SimpleNamespace(family=family, address=address)


def test_current_machine_info_skips_loopback(monkeypatch: pytest.MonkeyPatch) -> None:
    """The first non-loopback IPv4 address identifies the host."""
    monkeypatch.setattr(
        machines.psutil,
        "net_if_addrs",
        lambda: {
            "lo": [_address(socket.AF_INET, "127.0.0.1")],
            "eth0": [
                _address(socket.AF_INET6, "fe80::1"),
                _address(socket.AF_INET, "10.0.0.5"),
            ],
        },
    )
    monkeypatch.setattr(machines.socket, "gethostname", lambda: "app-01")

    assert current_machine_info() == HOST


def test_current_machine_info_falls_back_to_loopback(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hosts with only loopback addresses report ``127.0.0.1``."""
    monkeypatch.setattr(
        machines.psutil, "net_if_addrs", lambda: {"lo": [_address(socket.AF_INET, "127.0.0.1")]}
    )

    assert current_machine_info().local_ip_address == "127.0.0.1"


def test_register_validates_services(tmp_path: Path, registry: StateRegistry) -> None:
    """Registration stores each validated service with its resolved name."""
    app_dir = tmp_path / "apps" / "shop"
    app_dir.mkdir(parents=True)
    (app_dir / ".env").write_text("NAME_APP=shop\n", encoding="utf-8")
    unit_dir = tmp_path / "systemd"
    unit_dir.mkdir()
    (unit_dir / "shop.service").write_text(
        f"[Service]\nWorkingDirectory={app_dir}\n", encoding="utf-8"
    )
    inventory = MachineInventory(registry, unit_dir=unit_dir)

    record = inventory.register(
        url_api="http://10.0.0.5:8080",
        nginx_storage_path_options=["/etc/nginx/sites-available"],
        services=[ServiceUnit(filename="shop.service", port=3001)],
        info=HOST,
    )

    assert record["machine_name"] == "app-01"
    assert record["services"] == [
        {
            "filename": "shop.service",
            "name": "shop",
            "working_directory": str(app_dir),
            "port": 3001,
        }
    ]
    assert inventory.find_by_ip("10.0.0.5") == record
    assert inventory.list_machines() == [record]


def test_register_rejects_duplicates_and_bad_services(
    tmp_path: Path,
    registry: StateRegistry,
) -> None:
    """A machine is registered once and invalid services abort registration."""
    inventory = MachineInventory(registry, unit_dir=tmp_path)

    with pytest.raises(TsmError) as missing:
        inventory.register(services=[ServiceUnit(filename="ghost.service")], info=HOST)
    assert missing.value.code is ErrorCode.SERVICE_FILE_NOT_FOUND
    assert registry.machines.find() == []

    inventory.register(info=HOST)
    with pytest.raises(TsmError) as duplicate:
        inventory.register(info=HOST)
    assert duplicate.value.status == 400


def test_current_machine_not_registered(registry: StateRegistry) -> None:
    """Looking up an unknown host is a 404 naming its IP."""
    with pytest.raises(TsmError) as excinfo:
        MachineInventory(registry).current_machine(HOST)

    assert excinfo.value.code is ErrorCode.MACHINE_NOT_FOUND
    assert excinfo.value.details == "Current IP: 10.0.0.5"


def test_populate_sites_joins_hosts(registry: StateRegistry) -> None:
    """Sites gain summaries of their app and nginx host machines."""
    registry.machines.create(
        {"public_id": "m-app", "machine_name": "app-01", "local_ip_address": "10.0.0.5"}
    )
    registry.machines.create(
        {"public_id": "m-edge", "machine_name": "edge", "local_ip_address": "10.0.0.1"}
    )
    sites = [
        {
            "server_name": "shop.example.com",
            "app_host_machine_public_id": "m-app",
            "nginx_host_machine_public_id": "m-edge",
        },
        {"server_name": "orphan.example.com", "app_host_machine_public_id": None},
    ]

    populated = MachineInventory(registry).populate_sites(sites)

    assert populated[0]["app_host_machine"]["machine_name"] == "app-01"
    assert populated[0]["nginx_host_machine"]["public_id"] == "m-edge"
    assert populated[1]["app_host_machine"] is None
    assert populated[1]["nginx_host_machine"] is None


class FakeSystemd:
    """Systemd provider double answering from canned statuses."""

    def __init__(self, broken: set[str] | None = None) -> None:
        """Fail for every unit named in *broken*."""
        self.broken = broken or set()

    def status(self, filename: str) -> UnitStatus:
        """Return an active, enabled status."""
        if filename in self.broken:
            raise SystemdError(f"systemctl status failed for {filename}")
        return UnitStatus(status="active", on_start_status="enabled")

    def timer_status(self, filename: str) -> UnitStatus:
        """Return a waiting timer status with a trigger."""
        if filename in self.broken:
            raise SystemdError(f"systemctl status failed for {filename}")
        return UnitStatus(status="active", trigger="Wed 2024-05-08 03:00:00 UTC; 16h left")


def _service_unit(tmp_path: Path, unit_dir: Path, name: str) -> ServiceUnit:
    app_dir = tmp_path / "apps" / name
    app_dir.mkdir(parents=True)
    (app_dir / ".env").write_text(f"NAME_APP={name}\n", encoding="utf-8")
    (unit_dir / f"{name}.service").write_text(
        f"[Service]\nWorkingDirectory={app_dir}\n", encoding="utf-8"
    )
    return ServiceUnit(filename=f"{name}.service")


def test_update_changes_only_given_fields(
    tmp_path: Path,
    registry: StateRegistry,
    unit_dir: Path,
) -> None:
    """Updates merge the supplied fields and re-validate services."""
    inventory = MachineInventory(registry, unit_dir=unit_dir)
    record = inventory.register(url_api="http://old", info=HOST)

    updated = inventory.update(
        record["public_id"],
        url_api="http://10.0.0.5:8080",
        services=[_service_unit(tmp_path, unit_dir, "shop")],
    )

    assert updated["url_api"] == "http://10.0.0.5:8080"
    assert updated["nginx_storage_path_options"] == record["nginx_storage_path_options"]
    assert [service["name"] for service in updated["services"]] == ["shop"]
    assert inventory.find_by_public_id(record["public_id"]) == updated


def test_update_validation(tmp_path: Path, registry: StateRegistry, unit_dir: Path) -> None:
    """Empty updates, blank URLs and invalid services leave the record untouched."""
    inventory = MachineInventory(registry, unit_dir=unit_dir)
    record = inventory.register(info=HOST)

    with pytest.raises(TsmError) as empty:
        inventory.update(record["public_id"])
    with pytest.raises(TsmError) as blank:
        inventory.update(record["public_id"], url_api="  ")
    with pytest.raises(TsmError) as ghost:
        inventory.update(record["public_id"], services=[ServiceUnit(filename="ghost.service")])
    with pytest.raises(TsmError) as unknown:
        inventory.update("missing-id", url_api="http://x")

    assert empty.value.status == 400
    assert blank.value.status == 400
    assert ghost.value.code is ErrorCode.SERVICE_FILE_NOT_FOUND
    assert unknown.value.code is ErrorCode.MACHINE_NOT_FOUND
    assert unknown.value.status == 404
    assert inventory.find_by_public_id(record["public_id"]) == record


def test_delete_machine(registry: StateRegistry) -> None:
    """Deleting returns the removed record; unknown ids are 404s."""
    inventory = MachineInventory(registry)
    record = inventory.register(info=HOST)

    assert inventory.delete(record["public_id"])["machine_name"] == "app-01"
    assert inventory.list_machines() == []
    with pytest.raises(TsmError) as excinfo:
        inventory.delete(record["public_id"])
    assert excinfo.value.code is ErrorCode.MACHINE_NOT_FOUND


def test_service_statuses_report_unknown_failures(registry: StateRegistry) -> None:
    """Every service is listed even when systemctl fails for some of them."""
    registry.machines.create(
        {
            "machine_name": "app-01",
            "local_ip_address": "10.0.0.5",
            "services": [
                {"filename": "shop.service", "name": "shop"},
                {"filename": "report.service", "name": "report", "timer_filename": "report.timer"},
                {"filename": "broken.service", "name": "broken"},
                {"filename": "nightly.service", "name": "nightly", "timer_filename": "x.timer"},
            ],
        }
    )
    provider = FakeSystemd(broken={"broken.service", "x.timer"})

    statuses = MachineInventory(registry).service_statuses(provider, HOST)  # type: ignore[arg-type]

    assert [entry["status"] for entry in statuses] == ["active", "active", "unknown", "active"]
    assert "timer_status" not in statuses[0]
    assert statuses[1]["timer_trigger"].startswith("Wed 2024-05-08")
    assert statuses[2] == {"name": "broken", "filename": "broken.service", "status": "unknown"}
    assert statuses[3]["timer_status"] == "unknown"
    assert statuses[3]["timer_trigger"] == "unknown"


def test_services_require_configuration(registry: StateRegistry) -> None:
    """A host without services, or an unknown service name, is a 404."""
    registry.machines.create({"machine_name": "app-01", "local_ip_address": "10.0.0.5"})
    inventory = MachineInventory(registry)

    with pytest.raises(TsmError) as none:
        inventory.service_statuses(FakeSystemd(), HOST)  # type: ignore[arg-type]
    assert none.value.code is ErrorCode.SERVICE_NOT_FOUND

    registry.machines.find_one_and_update(
        {"local_ip_address": "10.0.0.5"}, {"services": [{"filename": "a.service", "name": "a"}]}
    )
    assert inventory.find_service("a", HOST)["filename"] == "a.service"
    with pytest.raises(TsmError) as unknown:
        inventory.find_service("b", HOST)
    assert unknown.value.code is ErrorCode.SERVICE_NOT_FOUND
    assert unknown.value.status == 404
