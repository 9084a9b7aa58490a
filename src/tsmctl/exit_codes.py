"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4

    @classmethod
    def from_status(cls, status: int) -> ExitCode:
        """Translate an HTTP-style error status into an exit code."""
        if status < 400:
            return cls.OK
        if status in (403, 404, 423):
            return cls.ENVIRONMENT
        if status < 500:
            return cls.VALIDATION
        return cls.PROVIDER
