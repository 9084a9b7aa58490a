"""Structured operation logging for tsmctl commands.

Every CLI command runs inside an :class:`OperationScope`. When the scope is
finished a JSON record is appended to ``operations.jsonl`` and a one-line
summary to ``tsmctl.log``. Logging problems never fail the command itself:
the logger disables itself after the first filesystem error.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "tsmctl.log"


def _sanitize(value: object) -> Any:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return _sanitize(value.value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[Any]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return [_sanitize(item) for item in values]


class StructuredLogger:
    """Append operation records under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if it is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Disabling operation log; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are still being written."""
        return self._enabled

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records the outcome of *command*."""
        return OperationScope(self, command, args=args or {}, target=target)

    # ------------------------------------------------------------------
    def _write(self, record: Mapping[str, Any]) -> None:
        if not self._enabled:
            return
        result = record.get("result", {})
        summary = (
            f"{record['timestamp']} {record['command']} "
            f"{result.get('status', 'unknown')} rc={result.get('rc')}: {result.get('message', '')}"
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(summary + "\n")
        except OSError as exc:
            LOGGER.warning("Disabling operation log after write failure: %s", exc)
            self._enabled = False


class OperationScope:
    """Context manager collecting the result of a single command."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object],
        target: Mapping[str, object] | None,
    ) -> None:
        """Capture the command metadata; timing starts on ``__enter__``."""
        self._logger = logger
        self.command = command
        self.args = dict(args)
        self.target = dict(target) if target is not None else None
        self.operation_id = uuid.uuid4().hex
        self.steps: list[dict[str, Any]] = []
        self.lock_wait_ms: int | None = None
        self._started = time.monotonic()
        self._result: dict[str, Any] | None = None

    def __enter__(self) -> OperationScope:
        """Start timing the operation."""
        self._started = time.monotonic()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Flush the record, turning an escaped exception into an error."""
        if self._result is None:
            if exc is not None and not _is_clean_exit(exc):
                self.error(str(exc) or exc_type.__name__, rc=1)  # type: ignore[union-attr]
            else:
                self.success("Completed.")
        self._flush()

    # ------------------------------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 2,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors if errors is not None else [message],
            backups=None,
            context=context,
            rc=rc,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[object] | None,
        errors: Iterable[object] | None,
        backups: Iterable[object] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self._result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "backups": _as_list(backups),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def _flush(self) -> None:
        record: dict[str, Any] = {
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "operation_id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "pid": os.getpid(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "context": {"tsmctl_version": __version__},
            "steps": self.steps,
            "result": self._result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        self._logger._write(record)


def _is_clean_exit(exc: BaseException) -> bool:
    # typer.Exit carries ``exit_code``; SystemExit carries ``code``.
    if isinstance(exc, SystemExit):
        return exc.code in (0, None)
    return getattr(exc, "exit_code", None) == 0


__all__ = ["OperationScope", "StructuredLogger"]
