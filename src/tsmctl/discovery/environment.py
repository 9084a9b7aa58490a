"""Resolve an application's identity from its dotenv files."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ErrorCode, TsmError
from ..extractors import extract_assignment
from ..filesystem import PathState, probe_path

DEFAULT_ENV_FILES: tuple[str, ...] = (".env", ".env.local")
DEFAULT_IDENTITY_VARIABLE = "NAME_APP"


@dataclass(slots=True, frozen=True)
class EnvCandidate:
    """One entry in the ordered fallback chain."""

    path: Path
    variable: str


@dataclass(slots=True, frozen=True)
class ResolvedEnvironment:
    """Identity resolved from a dotenv file."""

    identity: str
    source_file: str


@dataclass(slots=True, frozen=True)
class EnvironmentResolver:
    """Walk the dotenv candidates of a directory in order.

    The first candidate that exists decides the outcome: it must define the
    identity variable. Only a missing file moves the search on to the next
    candidate; an unreadable one stops it.
    """

    file_names: Sequence[str] = DEFAULT_ENV_FILES
    variable: str = DEFAULT_IDENTITY_VARIABLE

    def candidates(self, directory: Path) -> list[EnvCandidate]:
        """Return the ordered ``(path, variable)`` chain for *directory*."""
        return [EnvCandidate(directory / name, self.variable) for name in self.file_names]

    def resolve(self, directory: Path) -> ResolvedEnvironment:
        """Return the identity found in the first existing dotenv file."""
        for candidate in self.candidates(directory):
            state = probe_path(candidate.path)
            if state is PathState.MISSING:
                continue
            if state is PathState.DENIED:
                raise TsmError(
                    ErrorCode.ENV_FILE_PERMISSION_DENIED,
                    f"Permission denied reading {candidate.path.name} file",
                    status=403,
                    details=f"Cannot access {candidate.path}",
                )
            return _resolve_candidate(candidate)

        searched = ", ".join(self.file_names)
        raise TsmError(
            ErrorCode.ENV_FILE_NOT_FOUND,
            "Environment file not found",
            status=404,
            details=f"None of [{searched}] exist in '{directory}'",
        )


def _resolve_candidate(candidate: EnvCandidate) -> ResolvedEnvironment:
    try:
        content = candidate.path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TsmError(
            ErrorCode.ENV_FILE_READ_ERROR,
            f"Failed to read {candidate.path.name} file",
            status=400,
            details=f"{candidate.path}: {exc}",
        ) from exc

    identity = extract_assignment(content, candidate.variable)
    if identity is None:
        raise TsmError(
            ErrorCode.NAME_APP_NOT_FOUND,
            f"{candidate.variable} not found in {candidate.path.name} file",
            status=400,
            details=f"{candidate.variable} is not defined in {candidate.path}",
        )
    return ResolvedEnvironment(identity=identity, source_file=candidate.path.name)


__all__ = [
    "DEFAULT_ENV_FILES",
    "DEFAULT_IDENTITY_VARIABLE",
    "EnvCandidate",
    "EnvironmentResolver",
    "ResolvedEnvironment",
]
