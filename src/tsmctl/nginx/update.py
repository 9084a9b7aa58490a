"""Transactional replacement of live nginx site files.

A :class:`ConfigTransaction` moves through explicit states::

    INITIAL -> BACKED_UP -> WRITTEN -> VALIDATED -> COMMITTED
                    \\           \\
                     +-----------+--> ROLLED_BACK / FAILED

At every point the live path holds either the original bytes or the complete
new content. The backup sits beside the live file as
``<name>.backup.<nanosecond timestamp>`` until the transaction commits or
rolls back.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import ErrorCode, TsmError, validation_error
from ..filesystem import PathState, classify_os_error
from ..locking import LockManager
from ..providers.nginx import NginxError, NginxProvider, NginxUnavailableError
from ..state.registry import StateRegistry

LOGGER = logging.getLogger(__name__)


class TransactionState(str, Enum):
    """Lifecycle states of a :class:`ConfigTransaction`."""

    INITIAL = "initial"
    BACKED_UP = "backed_up"
    WRITTEN = "written"
    VALIDATED = "validated"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class ConfigTransaction:
    """Back up, replace, validate and commit a single live file."""

    def __init__(
        self,
        target_path: Path,
        validator: NginxProvider,
        *,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        """Bind the transaction to *target_path*; nothing touches disk yet."""
        self.target_path = Path(target_path)
        self.validator = validator
        self.backup_path = self.target_path.with_name(f"{self.target_path.name}.backup.{clock()}")
        self.state = TransactionState.INITIAL
        self.warnings: list[str] = []
        self.validator_output: str = ""

    def _expect(self, *states: TransactionState) -> None:
        if self.state not in states:
            expected = ", ".join(state.value for state in states)
            raise RuntimeError(
                f"Transaction for {self.target_path} is {self.state.value}; expected {expected}."
            )

    # ------------------------------------------------------------------
    def backup(self) -> None:
        """Copy the live file to the backup path."""
        self._expect(TransactionState.INITIAL)
        try:
            shutil.copy2(self.target_path, self.backup_path)
        except OSError as exc:
            self.backup_path.unlink(missing_ok=True)
            self.state = TransactionState.FAILED
            state = classify_os_error(exc)
            if state is PathState.MISSING:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_NOT_FOUND,
                    "Config file not found",
                    status=404,
                    details=f"{self.target_path} does not exist",
                ) from exc
            if state is PathState.DENIED:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_PERMISSION_DENIED,
                    "Permission denied backing up config file",
                    status=403,
                    details=f"Cannot copy {self.target_path} to {self.backup_path.name}",
                ) from exc
            raise TsmError(
                ErrorCode.CONFIG_WRITE_ERROR,
                "Failed to back up config file",
                status=500,
                details=f"{self.target_path}: {exc}",
            ) from exc
        self.state = TransactionState.BACKED_UP
        LOGGER.debug("Backed up %s to %s", self.target_path, self.backup_path)

    def write(self, content: str) -> None:
        """Replace the live file with *content* through a temporary sibling."""
        self._expect(TransactionState.BACKED_UP)
        tmp_path: Path | None = None
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.target_path.parent), prefix=f".{self.target_path.name}."
            )
            tmp_path = Path(tmp_name)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            shutil.copymode(self.backup_path, tmp_path)
            os.replace(tmp_path, self.target_path)
        except (OSError, UnicodeEncodeError) as exc:
            self.rollback()
            if isinstance(exc, OSError) and classify_os_error(exc) is PathState.DENIED:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_PERMISSION_DENIED,
                    "Permission denied writing config file",
                    status=403,
                    details=f"Cannot write {self.target_path}",
                ) from exc
            raise TsmError(
                ErrorCode.CONFIG_WRITE_ERROR,
                "Failed to write config file",
                status=500,
                details=f"{self.target_path}: {exc}",
            ) from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
        self.state = TransactionState.WRITTEN

    def validate(self) -> None:
        """Run the external validator, rolling back when it rejects the tree."""
        self._expect(TransactionState.WRITTEN)
        try:
            result = self.validator.test_config()
        except NginxUnavailableError as exc:
            self.rollback()
            raise TsmError(
                ErrorCode.VALIDATOR_UNAVAILABLE,
                "Nginx configuration test could not run",
                status=500,
                details=str(exc),
            ) from exc
        except NginxError as exc:
            self.validator_output = exc.diagnostics
            self.rollback()
            raise validation_error(
                "Nginx configuration test failed",
                exc.diagnostics or str(exc),
            ) from exc
        self.validator_output = ((result.stderr or "") + (result.stdout or "")).strip()
        self.state = TransactionState.VALIDATED

    def commit(self) -> list[str]:
        """Discard the backup; a failure to do so only produces a warning."""
        self._expect(TransactionState.VALIDATED)
        try:
            self.backup_path.unlink()
        except OSError as exc:
            message = f"Could not remove backup {self.backup_path}: {exc}"
            LOGGER.warning(message)
            self.warnings.append(message)
        self.state = TransactionState.COMMITTED
        return list(self.warnings)

    def rollback(self) -> bool:
        """Move the backup back over the live path."""
        try:
            os.replace(self.backup_path, self.target_path)
        except OSError as exc:
            LOGGER.error(
                "Rollback of %s from %s failed: %s", self.target_path, self.backup_path, exc
            )
            self.state = TransactionState.FAILED
            return False
        self.state = TransactionState.ROLLED_BACK
        LOGGER.info("Restored %s from backup", self.target_path)
        return True

    def abort(self) -> None:
        """Best-effort cleanup after an unexpected error."""
        if self.state is TransactionState.BACKED_UP:
            self.backup_path.unlink(missing_ok=True)
            self.state = TransactionState.FAILED
        elif self.state in (TransactionState.WRITTEN, TransactionState.VALIDATED):
            self.rollback()

    def run(self, content: str) -> list[str]:
        """Execute every step, returning commit warnings."""
        try:
            self.backup()
            self.write(content)
            self.validate()
            return self.commit()
        except BaseException:
            try:
                self.abort()
            except OSError as cleanup_exc:
                LOGGER.error("Cleanup of %s failed: %s", self.target_path, cleanup_exc)
            raise


@dataclass(slots=True)
class UpdateResult:
    """Outcome of a committed update."""

    public_id: str
    path: Path
    backup_path: Path
    state: TransactionState
    warnings: list[str] = field(default_factory=list)
    validator_output: str = ""
    lock_wait_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "public_id": self.public_id,
            "path": str(self.path),
            "backup_path": str(self.backup_path),
            "state": self.state.value,
            "warnings": list(self.warnings),
            "validator_output": self.validator_output,
        }


def check_public_id(public_id: str) -> str:
    """Return *public_id* normalised, or raise a validation error."""
    try:
        return str(uuid.UUID(str(public_id).strip()))
    except ValueError as exc:
        raise validation_error("Invalid public id", f"'{public_id}' is not a valid UUID") from exc


@dataclass(slots=True)
class SafeConfigUpdater:
    """Read, replace and delete the site files tracked in the registry."""

    registry: StateRegistry
    validator: NginxProvider
    locks: LockManager

    def site(self, public_id: str) -> dict[str, Any]:
        """Return the site record for *public_id* or raise ``SITE_NOT_FOUND``."""
        normalized = check_public_id(public_id)
        record = self.registry.sites.find_one({"public_id": normalized})
        if record is None:
            raise TsmError(
                ErrorCode.SITE_NOT_FOUND,
                "Nginx config file not found",
                status=404,
                details=f"No site with public id {normalized}",
            )
        return record

    @staticmethod
    def site_path(record: dict[str, Any]) -> Path:
        """Return the live file path for a site record."""
        return Path(str(record.get("store_directory", ""))) / str(record.get("server_name", ""))

    def read(self, public_id: str) -> str:
        """Return the live content of the site file."""
        path = self.site_path(self.site(public_id))
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            if classify_os_error(exc) is PathState.DENIED:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_PERMISSION_DENIED,
                    "Permission denied reading config file",
                    status=403,
                    details=str(path),
                ) from exc
            if classify_os_error(exc) is PathState.MISSING:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_NOT_FOUND,
                    "Config file not found",
                    status=404,
                    details=f"{path} does not exist",
                ) from exc
            raise TsmError(
                ErrorCode.INTERNAL_ERROR,
                "Failed to read config file",
                status=500,
                details=f"{path}: {exc}",
            ) from exc

    def update(
        self,
        public_id: str,
        content: str,
        *,
        timeout: float | None = None,
    ) -> UpdateResult:
        """Replace the site file with *content* if nginx accepts the result."""
        if not isinstance(content, str) or not content.strip():
            raise validation_error(
                "Request validation failed", "content must be a non-empty string"
            )
        record = self.site(public_id)
        path = self.site_path(record)

        with self.locks.mutate_paths([path], timeout=timeout) as bundle:
            transaction = ConfigTransaction(path, self.validator)
            warnings = transaction.run(content)
        LOGGER.info("Updated %s (%s)", path, record["public_id"])
        return UpdateResult(
            public_id=record["public_id"],
            path=path,
            backup_path=transaction.backup_path,
            state=transaction.state,
            warnings=warnings,
            validator_output=transaction.validator_output,
            lock_wait_ms=bundle.wait_ms,
        )

    def delete(
        self,
        public_id: str,
        *,
        timeout: float | None = None,
    ) -> tuple[dict[str, Any], list[str]]:
        """Remove the site file and its record; a missing file is a warning."""
        record = self.site(public_id)
        path = self.site_path(record)
        warnings: list[str] = []
        with self.locks.mutate_paths([path], timeout=timeout):
            try:
                path.unlink()
            except FileNotFoundError:
                message = f"Config file {path} was already absent"
                LOGGER.warning(message)
                warnings.append(message)
            except PermissionError as exc:
                raise TsmError(
                    ErrorCode.CONFIG_FILE_PERMISSION_DENIED,
                    "Permission denied deleting config file",
                    status=403,
                    details=str(path),
                ) from exc
            self.registry.sites.find_one_and_delete({"public_id": record["public_id"]})
        return record, warnings

    def clear(self) -> int:
        """Remove every site record, leaving the files in place."""
        return self.registry.sites.delete_many()


__all__ = [
    "ConfigTransaction",
    "SafeConfigUpdater",
    "TransactionState",
    "UpdateResult",
    "check_public_id",
]
