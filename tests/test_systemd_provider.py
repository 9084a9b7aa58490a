"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence

import pytest

from tsmctl.errors import ErrorCode, TsmError
from tsmctl.providers.systemd import (
    SystemdError,
    SystemdProvider,
    on_start_status,
    parse_status,
    simplify_active,
)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


SERVICE_STATUS = """\
● shop.service - Shop (Express.js)
     Loaded: loaded (/etc/systemd/system/shop.service; enabled; vendor preset: enabled)
     Active: active (running) since Tue 2024-05-07 10:00:00 UTC; 2h ago
   Main PID: 1234 (node)
"""

TIMER_STATUS = """\
● report.timer - Run report on a schedule
     Loaded: loaded (/etc/systemd/system/report.timer; disabled)
     Active: inactive (dead)
    Trigger: Wed 2024-05-08 03:00:00 UTC; 16h left
"""


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("active (running) since Tue", "active"),
        ("inactive (dead)", "inactive"),
        ("failed (Result: exit-code)", "failed"),
        ("activating (start) since", "activating"),
        ("deactivating (stop-sigterm)", "deactivating"),
        ("reloading", "unknown"),
        ("", "unknown"),
    ],
)
def test_simplify_active(line: str, expected: str) -> None:
    """The Active line collapses to a single state word."""
    assert simplify_active(line) == expected


def test_on_start_status_variants() -> None:
    """Enabled/disabled/static are read from the Loaded line."""
    assert on_start_status("loaded (/x.service; enabled; vendor preset: enabled)") == "enabled"
    assert on_start_status("loaded (/x.timer; disabled)") == "disabled"
    assert on_start_status("loaded (/x.service; static)") == "static"
    assert on_start_status("not-found (Reason: No such file)") == "unknown"


def test_parse_status_service_and_timer() -> None:
    """Timers additionally report their trigger."""
    service = parse_status(SERVICE_STATUS)
    timer = parse_status(TIMER_STATUS, timer=True)

    assert service.status == "active"
    assert service.on_start_status == "enabled"
    assert service.trigger is None
    assert "trigger" not in service.to_dict()
    assert timer.status == "inactive"
    assert timer.on_start_status == "disabled"
    assert timer.trigger == "Wed 2024-05-08 03:00:00 UTC; 16h left"


def test_status_runs_systemctl_without_check(monkeypatch: pytest.MonkeyPatch) -> None:
    """Inactive units exit non-zero but still produce a parsed status."""
    calls: list[list[str]] = []

    def fake_run(
        self: SystemdProvider, args: Sequence[str], *, check: bool, error_prefix: str
    ) -> DummyResult:
        calls.append(list(args))
        assert check is False
        return DummyResult(returncode=3, stdout=TIMER_STATUS)

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run)
    provider = SystemdProvider(systemctl_bin="sudo systemctl")

    status = provider.timer_status("report.timer")

    assert calls == [["sudo", "systemctl", "status", "report.timer"]]
    assert status.trigger is not None


def test_toggle_rejects_unknown_action() -> None:
    """Only the supported actions reach systemctl."""
    with pytest.raises(TsmError) as excinfo:
        SystemdProvider().toggle("mask", "shop.service")

    assert excinfo.value.code is ErrorCode.VALIDATION_ERROR


def test_toggle_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing systemctl call raises ``SystemdError`` with its output."""
    monkeypatch.setattr(
        "subprocess.run",
        lambda *args, **kwargs: DummyResult(returncode=5, stderr="Unit shop.service not found."),
    )

    with pytest.raises(SystemdError) as excinfo:
        SystemdProvider().toggle("restart", "shop.service")

    assert "exit 5" in str(excinfo.value)
    assert "not found" in str(excinfo.value)


def test_missing_systemctl(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing binary is reported as ``SystemdError``."""

    def fake_run(*args: object, **kwargs: object) -> DummyResult:
        raise FileNotFoundError("systemctl")

    monkeypatch.setattr("subprocess.run", fake_run)

    with pytest.raises(SystemdError):
        SystemdProvider().status("shop.service")


def test_unexecutable_systemctl(monkeypatch: pytest.MonkeyPatch) -> None:
    """Other failures to start systemctl are provider errors too."""

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr("tsmctl.providers.systemd.subprocess.run", fake_run)

    with pytest.raises(SystemdError, match="Cannot run systemctl"):
        SystemdProvider().status("shop.service")
