"""File-based locks guarding mutations of live configuration files.

Locks are POSIX advisory locks (``fcntl.flock``) on files under the runtime
directory. The host-wide lock is always acquired before any per-path lock so
two mutating commands can never deadlock. Lock files are left on disk after
release; they record the holder's pid for diagnostics.
"""
from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from .errors import ErrorCode, TsmError, internal_error

LOGGER = logging.getLogger(__name__)

GLOBAL_LOCK_NAME = "tsmctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(TsmError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Describe which lock timed out."""
        super().__init__(
            ErrorCode.LOCK_TIMEOUT,
            "Timed out waiting for lock",
            status=423,
            details=f"{path} was not released within {timeout:.1f} seconds",
        )
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long acquiring it took."""

    path: Path
    wait_ms: int
    _handle: IO[str] = field(repr=False)

    def release(self) -> None:
        """Release the lock and close the lock file."""
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()


@dataclass(slots=True)
class LockBundle:
    """Locks acquired together by :meth:`LockManager.mutate_paths`."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire the host-wide and per-path locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the runtime directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    def global_lock_path(self) -> Path:
        """Return the host-wide lock file path."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def path_lock_path(self, target: Path) -> Path:
        """Return the lock file guarding *target*, keyed by its resolved path."""
        resolved = str(Path(target).expanduser().resolve(strict=False))
        digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:32]
        return self.runtime_dir / "paths" / f"{digest}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide lock for the duration of the block."""
        handle = self._acquire(self.global_lock_path(), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def path_lock(self, target: Path, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single *target* path."""
        handle = self._acquire(self.path_lock_path(target), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def mutate_paths(
        self,
        targets: Iterable[Path],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the host-wide lock followed by one lock per target path."""
        bundle = LockBundle()
        lock_paths = sorted({self.path_lock_path(target) for target in targets})
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for lock_path in lock_paths:
                handle = self._acquire(lock_path, timeout)
                stack.callback(handle.release)
                bundle.handles.append(handle)
            yield bundle

    # ------------------------------------------------------------------
    def _acquire(self, lock_path: Path, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else timeout
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = lock_path.open("a+", encoding="utf-8")
        except PermissionError as exc:
            raise TsmError(
                ErrorCode.STATE_PERMISSION_DENIED,
                "Permission denied opening lock file",
                status=403,
                details=str(lock_path),
            ) from exc
        except OSError as exc:
            raise internal_error("Failed to open lock file", f"{lock_path}: {exc}") from exc
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(lock_path, limit) from None
                    time.sleep(_POLL_INTERVAL)
        except BaseException:
            handle.close()
            raise

        wait_ms = int((time.monotonic() - started) * 1000)
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps({"pid": os.getpid(), "path": str(lock_path)}))
        handle.flush()
        if wait_ms:
            LOGGER.debug("Acquired %s after %d ms", lock_path, wait_ms)
        return LockHandle(path=lock_path, wait_ms=wait_ms, _handle=handle)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
