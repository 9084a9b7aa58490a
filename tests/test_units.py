"""Tests for service unit validation."""
from __future__ import annotations

from pathlib import Path

import pytest

from tsmctl.discovery import units
from tsmctl.discovery.environment import EnvironmentResolver
from tsmctl.discovery.units import ServiceUnit, validate_unit
from tsmctl.errors import ErrorCode, TsmError
from tsmctl.filesystem import PathState


def _write_unit(unit_dir: Path, filename: str, body: str) -> Path:
    path = unit_dir / filename
    path.write_text(f"[Unit]\nDescription=test\n\n[Service]\n{body}", encoding="utf-8")
    return path


def _app_dir(tmp_path: Path, identity: str | None = "billing") -> Path:
    app_dir = tmp_path / "apps" / "billing"
    app_dir.mkdir(parents=True)
    if identity is not None:
        (app_dir / ".env").write_text(f"PORT=3001\nNAME_APP={identity}\n", encoding="utf-8")
    return app_dir


def test_validate_unit_enriches_with_identity(tmp_path: Path, unit_dir: Path) -> None:
    """A valid unit gains its app name and working directory."""
    app_dir = _app_dir(tmp_path)
    _write_unit(unit_dir, "billing.service", f"WorkingDirectory={app_dir}\nEnvironment=PORT=3001\n")

    unit = validate_unit(
        ServiceUnit(filename=" billing.service ", timer_filename="billing.timer", port=3001),
        unit_dir=unit_dir,
    )

    assert unit.filename == "billing.service"
    assert unit.name == "billing"
    assert unit.working_directory == str(app_dir)
    assert unit.timer_filename == "billing.timer"
    assert unit.port == 3001


@pytest.mark.parametrize("filename", ["", "   ", "billing.timer", "billing"])
def test_validate_unit_rejects_bad_filename(filename: str, unit_dir: Path) -> None:
    """Filenames are checked before touching the filesystem."""
    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename=filename), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.VALIDATION_ERROR
    assert excinfo.value.status == 400


def test_missing_unit_file(unit_dir: Path) -> None:
    """An absent unit file is a 404."""
    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="ghost.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.SERVICE_FILE_NOT_FOUND
    assert excinfo.value.status == 404


def test_unreadable_unit_file(unit_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A unit file that cannot be accessed is a 403."""
    _write_unit(unit_dir, "locked.service", "WorkingDirectory=/tmp\n")
    monkeypatch.setattr(units, "probe_path", lambda path, directory=False: PathState.DENIED)

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="locked.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.SERVICE_FILE_PERMISSION_DENIED
    assert excinfo.value.status == 403


def test_missing_working_directory_property(unit_dir: Path) -> None:
    """Units without ``WorkingDirectory=`` cannot be resolved."""
    _write_unit(unit_dir, "bare.service", "ExecStart=/bin/true\n")

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="bare.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.WORKING_DIRECTORY_NOT_FOUND
    assert excinfo.value.status == 400


@pytest.mark.parametrize("value", ["apps/billing", "./billing", "~/billing"])
def test_relative_working_directory_is_rejected(
    value: str,
    tmp_path: Path,
    unit_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A relative ``WorkingDirectory`` is never resolved against the current directory."""
    _app_dir(tmp_path)
    monkeypatch.chdir(tmp_path)
    _write_unit(unit_dir, "billing.service", f"WorkingDirectory={value}\n")

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="billing.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.VALIDATION_ERROR
    assert excinfo.value.status == 400


def test_working_directory_does_not_exist(tmp_path: Path, unit_dir: Path) -> None:
    """A ``WorkingDirectory`` that is absent on disk is a 404."""
    _write_unit(unit_dir, "gone.service", f"WorkingDirectory={tmp_path / 'nowhere'}\n")

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="gone.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.WORKING_DIRECTORY_NOT_FOUND
    assert excinfo.value.status == 404


def test_working_directory_permission_denied(
    tmp_path: Path,
    unit_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An inaccessible ``WorkingDirectory`` is a 403."""
    app_dir = _app_dir(tmp_path)
    _write_unit(unit_dir, "billing.service", f"WorkingDirectory={app_dir}\n")

    def fake_probe(path: Path, *, directory: bool = False) -> PathState:
        return PathState.DENIED if directory else PathState.PRESENT

    monkeypatch.setattr(units, "probe_path", fake_probe)

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="billing.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.WORKING_DIRECTORY_PERMISSION_DENIED
    assert excinfo.value.status == 403


def test_identity_errors_propagate(tmp_path: Path, unit_dir: Path) -> None:
    """Environment resolution failures are surfaced unchanged."""
    app_dir = _app_dir(tmp_path, identity=None)
    _write_unit(unit_dir, "billing.service", f"WorkingDirectory={app_dir}\n")

    with pytest.raises(TsmError) as excinfo:
        validate_unit(ServiceUnit(filename="billing.service"), unit_dir=unit_dir)

    assert excinfo.value.code is ErrorCode.ENV_FILE_NOT_FOUND


def test_custom_resolver_is_used(tmp_path: Path, unit_dir: Path) -> None:
    """A resolver with other dotenv names can be injected."""
    app_dir = _app_dir(tmp_path, identity=None)
    (app_dir / "service.env").write_text("APP_ID=ledger\n", encoding="utf-8")
    _write_unit(unit_dir, "billing.service", f"WorkingDirectory={app_dir}\n")
    resolver = EnvironmentResolver(file_names=("service.env",), variable="APP_ID")

    unit = validate_unit(
        ServiceUnit(filename="billing.service"), unit_dir=unit_dir, resolver=resolver
    )

    assert unit.name == "ledger"


def test_service_unit_mapping_round_trip() -> None:
    """``to_dict`` omits unset fields and ``from_mapping`` validates types."""
    unit = ServiceUnit(filename="a.service", port=3000)

    assert unit.to_dict() == {"filename": "a.service", "port": 3000}
    assert ServiceUnit.from_mapping(unit.to_dict()) == unit

    with pytest.raises(TsmError):
        ServiceUnit.from_mapping({"filename": "a.service", "port": "3000"})
    with pytest.raises(TsmError):
        ServiceUnit.from_mapping({"filename": 5})
