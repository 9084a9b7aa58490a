"""Nginx provider wrapping the configuration test command."""
from __future__ import annotations

import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field


class NginxError(RuntimeError):
    """Raised when nginx rejects the configuration or a command fails."""

    def __init__(self, message: str, *, diagnostics: str = "") -> None:
        """Store the message together with the captured command output."""
        super().__init__(message)
        self.diagnostics = diagnostics


class NginxUnavailableError(NginxError):
    """Raised when the nginx command cannot be run or does not finish in time."""


@dataclass(slots=True)
class NginxProvider:
    """Run nginx's syntax check for the whole configuration tree."""

    test_command: Sequence[str] = field(default_factory=lambda: ("nginx", "-t"))
    timeout: float | None = 60.0

    @classmethod
    def from_command(
        cls,
        test_command: str | Sequence[str],
        *,
        timeout: float | None = 60.0,
    ) -> NginxProvider:
        """Build a provider from a shell-style or pre-split test command."""
        if isinstance(test_command, str):
            parts = shlex.split(test_command)
        else:
            parts = [str(part) for part in test_command]
        if not parts:
            raise ValueError("nginx test command must not be empty.")
        return cls(test_command=tuple(parts), timeout=timeout)

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run the configuration test; raise :class:`NginxError` on rejection."""
        return self._run_nginx(self.test_command)

    # ------------------------------------------------------------------
    def _run_nginx(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        joined = " ".join(command)
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(command),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise NginxUnavailableError(f"{command[0]} not found: {exc}") from exc
        except OSError as exc:
            raise NginxUnavailableError(f"Cannot run {joined}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise NginxUnavailableError(
                f"{joined} did not finish within {self.timeout} seconds"
            ) from exc
        if result.returncode != 0:
            diagnostics = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{joined} failed (exit {result.returncode}): {diagnostics}",
                diagnostics=diagnostics,
            )
        return result


__all__ = ["NginxError", "NginxProvider", "NginxUnavailableError"]
