"""YAML-backed record store for tsmctl.

The registry directory (``/var/lib/tsmctl/registry`` by default) holds one
YAML file per collection, such as ``sites.yml`` and ``machines.yml``. Each
file is rewritten atomically so a crash never leaves a half-written
collection behind. Records are plain mappings keyed by ``public_id``.
"""
from __future__ import annotations

import os
import tempfile
import uuid
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from ..errors import ErrorCode, TsmError


class StateRegistryError(TsmError):
    """Raised when state registry operations fail."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status: int = 500,
        details: str | None = None,
    ) -> None:
        """Classify the failure; unexpected registry problems are 500s."""
        super().__init__(code, message, status=status, details=details)


def _os_failure(action: str, path: Path, exc: OSError) -> StateRegistryError:
    if isinstance(exc, PermissionError):
        return StateRegistryError(
            f"Permission denied {action} registry file",
            code=ErrorCode.STATE_PERMISSION_DENIED,
            status=403,
            details=str(path),
        )
    return StateRegistryError(f"Failed {action} registry file", details=f"{path}: {exc}")


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat()


def matches(record: Mapping[str, Any], query: Mapping[str, object]) -> bool:
    """Return True when *record* satisfies every condition in *query*.

    A condition is either a plain value (equality) or ``{"$in": [...]}``
    (membership).
    """
    for key, expected in query.items():
        actual = record.get(key)
        if isinstance(expected, Mapping) and "$in" in expected:
            options = expected["$in"]
            if not isinstance(options, Iterable) or isinstance(options, (str, bytes)):
                raise StateRegistryError(
                    "Invalid registry query",
                    code=ErrorCode.VALIDATION_ERROR,
                    status=400,
                    details=f"'$in' for '{key}' must be a list of values.",
                )
            if actual not in list(options):
                return False
        elif actual != expected:
            return False
    return True


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise StateRegistryError(
                "Failed to parse registry file", details=f"{path}: {exc}"
            ) from exc
        except OSError as exc:
            raise _os_failure("reading", path, exc) from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        path = self.path_for(name)
        tmp_path: Path | None = None
        try:
            self.ensure_root()
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
            tmp_path = Path(tmp_name)
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise _os_failure("writing", path, exc) from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

    # Collections -------------------------------------------------------
    def collection(self, name: str) -> RecordCollection:
        """Return the record collection stored in ``<name>.yml``."""
        return RecordCollection(self, name)

    @property
    def sites(self) -> RecordCollection:
        """Nginx site records."""
        return self.collection("sites")

    @property
    def machines(self) -> RecordCollection:
        """Machine records."""
        return self.collection("machines")


@dataclass(frozen=True)
class RecordCollection:
    """A list of mapping records persisted in a single registry file."""

    registry: StateRegistry
    name: str

    @property
    def filename(self) -> str:
        """Return the registry file holding this collection."""
        return f"{self.name}.yml"

    def _load(self) -> list[dict[str, Any]]:
        raw = self.registry.read(self.filename, default={self.name: []})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(
                "Registry file is malformed",
                details=f"{self.filename} must contain a mapping.",
            )
        entries = raw.get(self.name, [])
        if not isinstance(entries, list):
            raise StateRegistryError(
                "Registry file is malformed",
                details=f"'{self.name}' in {self.filename} must be a list.",
            )
        return [dict(entry) for entry in entries if isinstance(entry, Mapping)]

    def _save(self, records: Iterable[Mapping[str, Any]]) -> None:
        self.registry.write(self.filename, {self.name: [dict(record) for record in records]})

    # ------------------------------------------------------------------
    def find(self, query: Mapping[str, object] | None = None) -> list[dict[str, Any]]:
        """Return every record matching *query* (all records when omitted)."""
        return [record for record in self._load() if matches(record, query or {})]

    def find_one(self, query: Mapping[str, object]) -> dict[str, Any] | None:
        """Return the first record matching *query*."""
        for record in self._load():
            if matches(record, query):
                return record
        return None

    def create(self, document: Mapping[str, object]) -> dict[str, Any]:
        """Insert *document*, assigning ``public_id`` and timestamps when absent."""
        records = self._load()
        record: dict[str, Any] = dict(document)
        record.setdefault("public_id", str(uuid.uuid4()))
        if any(existing.get("public_id") == record["public_id"] for existing in records):
            raise StateRegistryError(
                "Record already exists",
                code=ErrorCode.VALIDATION_ERROR,
                status=400,
                details=f"'{record['public_id']}' already exists in {self.name}.",
            )
        now = _timestamp()
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        records.append(record)
        self._save(records)
        return deepcopy(record)

    def find_one_and_update(
        self,
        query: Mapping[str, object],
        updates: Mapping[str, object],
    ) -> dict[str, Any] | None:
        """Merge *updates* into the first matching record and return it."""
        records = self._load()
        for index, record in enumerate(records):
            if matches(record, query):
                merged = dict(record)
                merged.update(updates)
                merged["updated_at"] = _timestamp()
                records[index] = merged
                self._save(records)
                return deepcopy(merged)
        return None

    def find_one_and_delete(self, query: Mapping[str, object]) -> dict[str, Any] | None:
        """Remove the first matching record and return it."""
        records = self._load()
        for index, record in enumerate(records):
            if matches(record, query):
                del records[index]
                self._save(records)
                return record
        return None

    def delete_many(self, query: Mapping[str, object] | None = None) -> int:
        """Remove every matching record and return how many were deleted."""
        records = self._load()
        kept = [record for record in records if not matches(record, query or {})]
        removed = len(records) - len(kept)
        if removed:
            self._save(kept)
        return removed


__all__ = ["RecordCollection", "StateRegistry", "StateRegistryError", "matches"]
