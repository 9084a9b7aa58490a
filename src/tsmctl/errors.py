"""Error taxonomy shared by every tsmctl component.

Low-level filesystem and subprocess failures are reclassified into
:class:`TsmError` before they leave a component, so callers only ever see a
closed set of :class:`ErrorCode` values paired with an HTTP-style status.
"""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Closed set of error kinds surfaced by tsmctl."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"

    # Environment files
    ENV_FILE_NOT_FOUND = "ENV_FILE_NOT_FOUND"
    ENV_FILE_PERMISSION_DENIED = "ENV_FILE_PERMISSION_DENIED"
    ENV_FILE_READ_ERROR = "ENV_FILE_READ_ERROR"
    NAME_APP_NOT_FOUND = "NAME_APP_NOT_FOUND"

    # Service units
    SERVICE_FILE_NOT_FOUND = "SERVICE_FILE_NOT_FOUND"
    SERVICE_FILE_PERMISSION_DENIED = "SERVICE_FILE_PERMISSION_DENIED"
    SERVICE_FILE_READ_ERROR = "SERVICE_FILE_READ_ERROR"
    WORKING_DIRECTORY_NOT_FOUND = "WORKING_DIRECTORY_NOT_FOUND"
    WORKING_DIRECTORY_PERMISSION_DENIED = "WORKING_DIRECTORY_PERMISSION_DENIED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"

    # Unit inventory
    INVENTORY_FILE_NOT_FOUND = "INVENTORY_FILE_NOT_FOUND"
    INVENTORY_FILE_PERMISSION_DENIED = "INVENTORY_FILE_PERMISSION_DENIED"
    INVENTORY_FILE_READ_ERROR = "INVENTORY_FILE_READ_ERROR"
    ORPHANED_TIMER_FILE = "ORPHANED_TIMER_FILE"
    INVALID_PORT_FORMAT = "INVALID_PORT_FORMAT"

    # Nginx sites
    NGINX_DIRECTORY_NOT_FOUND = "NGINX_DIRECTORY_NOT_FOUND"
    NGINX_DIRECTORY_PERMISSION_DENIED = "NGINX_DIRECTORY_PERMISSION_DENIED"
    SITE_NOT_FOUND = "SITE_NOT_FOUND"
    MACHINE_NOT_FOUND = "MACHINE_NOT_FOUND"
    CONFIG_FILE_NOT_FOUND = "CONFIG_FILE_NOT_FOUND"
    CONFIG_FILE_PERMISSION_DENIED = "CONFIG_FILE_PERMISSION_DENIED"
    CONFIG_WRITE_ERROR = "CONFIG_WRITE_ERROR"
    VALIDATOR_UNAVAILABLE = "VALIDATOR_UNAVAILABLE"
    REPORT_DIRECTORY_NOT_FOUND = "REPORT_DIRECTORY_NOT_FOUND"

    # Machines and services
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    LOG_FILE_NOT_FOUND = "LOG_FILE_NOT_FOUND"
    LOG_FILE_PERMISSION_DENIED = "LOG_FILE_PERMISSION_DENIED"
    LOG_FILE_READ_ERROR = "LOG_FILE_READ_ERROR"

    # Registry and runtime state
    STATE_PERMISSION_DENIED = "STATE_PERMISSION_DENIED"


class TsmError(RuntimeError):
    """Raised when a tsmctl operation fails with a classified error."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        status: int,
        details: str | None = None,
    ) -> None:
        """Store the classified error payload."""
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details

    def __str__(self) -> str:
        """Render the error with its code and (when present) details."""
        text = f"{self.code.value}: {self.message}"
        if self.details:
            text += f" ({self.details})"
        return text

    def to_dict(self, *, production: bool = False) -> dict[str, object]:
        """Return the serialisable error envelope.

        ``details`` is dropped for production deployments so internal paths
        and command output are never exposed to callers.
        """
        payload: dict[str, object] = {
            "code": self.code.value,
            "message": self.message,
            "status": self.status,
        }
        if self.details is not None and not production:
            payload["details"] = self.details
        return {"error": payload}


def validation_error(message: str, details: str | None = None) -> TsmError:
    """Return a 400 ``VALIDATION_ERROR``."""
    return TsmError(ErrorCode.VALIDATION_ERROR, message, status=400, details=details)


def internal_error(message: str, details: str | None = None) -> TsmError:
    """Return a 500 ``INTERNAL_ERROR``."""
    return TsmError(ErrorCode.INTERNAL_ERROR, message, status=500, details=details)


__all__ = ["ErrorCode", "TsmError", "internal_error", "validation_error"]
