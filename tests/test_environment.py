"""Tests for dotenv identity resolution."""
from __future__ import annotations

from pathlib import Path

import pytest

from tsmctl.discovery import environment
from tsmctl.discovery.environment import EnvironmentResolver
from tsmctl.errors import ErrorCode, TsmError
from tsmctl.filesystem import PathState


def test_resolve_prefers_primary_file(tmp_path: Path) -> None:
    """``.env`` is consulted before ``.env.local``."""
    (tmp_path / ".env").write_text("NAME_APP=primary\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text("NAME_APP=secondary\n", encoding="utf-8")

    resolved = EnvironmentResolver().resolve(tmp_path)

    assert resolved.identity == "primary"
    assert resolved.source_file == ".env"


def test_resolve_falls_back_when_primary_missing(tmp_path: Path) -> None:
    """A missing primary file moves the search on to the secondary file."""
    (tmp_path / ".env.local").write_text("NAME_APP=nextapp\n", encoding="utf-8")

    resolved = EnvironmentResolver().resolve(tmp_path)

    assert resolved.identity == "nextapp"
    assert resolved.source_file == ".env.local"


def test_primary_without_identity_does_not_fall_back(tmp_path: Path) -> None:
    """An existing primary file must define the variable itself."""
    (tmp_path / ".env").write_text("PORT=3000\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text("NAME_APP=ignored\n", encoding="utf-8")

    with pytest.raises(TsmError) as excinfo:
        EnvironmentResolver().resolve(tmp_path)

    assert excinfo.value.code is ErrorCode.NAME_APP_NOT_FOUND
    assert excinfo.value.status == 400


def test_no_candidates_is_not_found(tmp_path: Path) -> None:
    """A directory with neither file reports ``ENV_FILE_NOT_FOUND``."""
    with pytest.raises(TsmError) as excinfo:
        EnvironmentResolver().resolve(tmp_path)

    assert excinfo.value.code is ErrorCode.ENV_FILE_NOT_FOUND
    assert excinfo.value.status == 404


def test_unreadable_primary_stops_search(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Permission problems are reported instead of silently falling back."""
    (tmp_path / ".env").write_text("NAME_APP=primary\n", encoding="utf-8")
    (tmp_path / ".env.local").write_text("NAME_APP=secondary\n", encoding="utf-8")

    def fake_probe(path: Path, *, directory: bool = False) -> PathState:
        return PathState.DENIED if path.name == ".env" else PathState.PRESENT

    monkeypatch.setattr(environment, "probe_path", fake_probe)

    with pytest.raises(TsmError) as excinfo:
        EnvironmentResolver().resolve(tmp_path)

    assert excinfo.value.code is ErrorCode.ENV_FILE_PERMISSION_DENIED
    assert excinfo.value.status == 403


def test_undecodable_file_is_read_error(tmp_path: Path) -> None:
    """Bytes that are not UTF-8 surface as ``ENV_FILE_READ_ERROR``."""
    (tmp_path / ".env").write_bytes(b"NAME_APP=\xff\xfe\n")

    with pytest.raises(TsmError) as excinfo:
        EnvironmentResolver().resolve(tmp_path)

    assert excinfo.value.code is ErrorCode.ENV_FILE_READ_ERROR


def test_custom_file_names_and_variable(tmp_path: Path) -> None:
    """The candidate chain and identity variable are configurable."""
    (tmp_path / "app.env").write_text("SERVICE_ID=custom\n", encoding="utf-8")
    resolver = EnvironmentResolver(file_names=("missing.env", "app.env"), variable="SERVICE_ID")

    assert [c.path.name for c in resolver.candidates(tmp_path)] == ["missing.env", "app.env"]
    assert resolver.resolve(tmp_path).identity == "custom"
