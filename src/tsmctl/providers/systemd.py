"""Systemd provider for querying and controlling service units."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import validation_error

LOGGER = logging.getLogger(__name__)

UNKNOWN = "unknown"
TOGGLE_ACTIONS = frozenset({"start", "stop", "restart", "reload", "enable", "disable"})
ACTIVE_STATES = ("deactivating", "activating", "inactive", "active", "failed")
ON_START_STATES = ("enabled", "disabled", "static")


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True, frozen=True)
class UnitStatus:
    """Parsed ``systemctl status`` output for a unit."""

    loaded: str = UNKNOWN
    active: str = UNKNOWN
    status: str = UNKNOWN
    on_start_status: str = UNKNOWN
    trigger: str | None = None

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        payload = {
            "loaded": self.loaded,
            "active": self.active,
            "status": self.status,
            "on_start_status": self.on_start_status,
        }
        if self.trigger is not None:
            payload["trigger"] = self.trigger
        return payload


def simplify_active(active_line: str) -> str:
    """Reduce an ``Active:`` value such as ``active (running) since ...``."""
    lowered = active_line.strip().lower()
    if not lowered or lowered == UNKNOWN:
        return UNKNOWN
    # "inactive" and "deactivating" must be checked before their suffixes.
    for state in ACTIVE_STATES:
        if lowered.startswith(state):
            return state
    return UNKNOWN


def on_start_status(loaded_line: str) -> str:
    """Return enabled/disabled/static from a ``Loaded:`` value."""
    for state in ON_START_STATES:
        if f"; {state};" in loaded_line or f"; {state})" in loaded_line:
            return state
    return UNKNOWN


def parse_status(output: str, *, timer: bool = False) -> UnitStatus:
    """Parse the Loaded/Active (and Trigger for timers) lines of *output*."""
    fields = {"Loaded:": UNKNOWN, "Active:": UNKNOWN, "Trigger:": UNKNOWN}
    for line in output.splitlines():
        stripped = line.strip()
        for prefix in fields:
            if stripped.startswith(prefix):
                fields[prefix] = stripped[len(prefix):].strip()
    loaded = fields["Loaded:"]
    active = fields["Active:"]
    if UNKNOWN in (loaded, active):
        LOGGER.debug("Incomplete systemctl status output: %r", output[:200])
    return UnitStatus(
        loaded=loaded,
        active=active,
        status=simplify_active(active),
        on_start_status=on_start_status(loaded),
        trigger=fields["Trigger:"] if timer else None,
    )


@dataclass(slots=True)
class SystemdProvider:
    """Query and control systemd units through ``systemctl``."""

    systemctl_bin: str = "systemctl"

    def status(self, filename: str) -> UnitStatus:
        """Return the parsed status of a service unit."""
        result = self._systemctl("status", filename, check=False)
        return parse_status(result.stdout or "")

    def timer_status(self, filename: str) -> UnitStatus:
        """Return the parsed status of a timer unit, including its trigger."""
        result = self._systemctl("status", filename, check=False)
        return parse_status(result.stdout or "", timer=True)

    def toggle(self, action: str, filename: str) -> subprocess.CompletedProcess[str]:
        """Run ``systemctl <action> <filename>`` for a supported action."""
        if action not in TOGGLE_ACTIONS:
            allowed = ", ".join(sorted(TOGGLE_ACTIONS))
            raise validation_error(
                "Request validation failed",
                f"action '{action}' is not one of: {allowed}",
            )
        LOGGER.info("Running systemctl %s %s", action, filename)
        return self._systemctl(action, filename)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [*self.systemctl_bin.split(), command, unit]
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        except OSError as exc:
            raise SystemdError(f"Cannot run {args[0]}: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "SystemdError",
    "SystemdProvider",
    "UnitStatus",
    "on_start_status",
    "parse_status",
    "simplify_active",
]
