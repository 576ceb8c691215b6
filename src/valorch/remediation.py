"""Snapshot and remediation engine.

Fixes run inside a create/apply/rollback triad: the targets a fix touches are
captured first, the mutation runs, and a failed mutation restores every
captured file and environment value before the error is surfaced.

A snapshot holds per-target locks for its whole lifetime, so two remediation
operations never hold uncommitted snapshots on the same target at once.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
import threading
import uuid
from collections.abc import Callable, Iterable, MutableMapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Literal

from valorch.errors import RemediationError, RollbackError, SnapshotError
from valorch.models import utcnow

logger = logging.getLogger(__name__)

# Seconds to wait for a target held by another remediation
DEFAULT_LOCK_TIMEOUT = 30.0


@dataclass(frozen=True)
class Target:
    """Something a fix may mutate: a file path or an environment key.

    Use the ``file`` and ``env`` constructors; file targets are stored as
    absolute paths so the same file always maps to the same lock.
    """

    kind: Literal["file", "env"]
    key: str

    @classmethod
    def file(cls, path: str | os.PathLike[str]) -> Target:
        return cls("file", os.path.abspath(os.fspath(path)))

    @classmethod
    def env(cls, key: str) -> Target:
        if not key:
            raise ValueError("Environment target key must be non-empty")
        return cls("env", key)

    @property
    def lock_key(self) -> str:
        return f"{self.kind}:{self.key}"

    def __str__(self) -> str:
        return self.key if self.kind == "file" else f"${self.key}"


@dataclass(frozen=True)
class CapturedFile:
    """Pre-change state of one path.

    Attributes:
        path: Absolute path.
        existed: Whether the path existed at capture time.
        content: File bytes (None for directories and absent paths).
        mode: Permission bits (None for absent paths).
        is_dir: Whether the path was a directory.
    """

    path: Path
    existed: bool
    content: bytes | None = None
    mode: int | None = None
    is_dir: bool = False


class SnapshotState(str, Enum):
    ACTIVE = "active"
    DISCARDED = "discarded"
    RESTORED = "restored"


@dataclass
class Snapshot:
    """A remediation safety checkpoint owned by the engine."""

    snapshot_id: str
    created_at: datetime
    captured_files: dict[Path, CapturedFile] = field(default_factory=dict)
    captured_env: dict[str, str | None] = field(default_factory=dict)
    state: SnapshotState = SnapshotState.ACTIVE
    lock_keys: tuple[str, ...] = ()

    @property
    def targets(self) -> list[str]:
        return [str(p) for p in self.captured_files] + [f"${k}" for k in self.captured_env]


def capture_file(path: Path) -> CapturedFile:
    """Capture content and mode of ``path``.

    Raises:
        SnapshotError: If the path exists but cannot be read.
    """
    try:
        st = path.lstat()
    except FileNotFoundError:
        return CapturedFile(path=path, existed=False)
    except OSError as e:
        raise SnapshotError(f"Cannot stat {path}: {e}") from e

    mode = stat.S_IMODE(st.st_mode)
    if stat.S_ISDIR(st.st_mode):
        return CapturedFile(path=path, existed=True, mode=mode, is_dir=True)
    if not stat.S_ISREG(st.st_mode):
        raise SnapshotError(f"Cannot snapshot {path}: not a regular file or directory")
    try:
        content = path.read_bytes()
    except OSError as e:
        raise SnapshotError(f"Cannot read {path}: {e}") from e
    return CapturedFile(path=path, existed=True, content=content, mode=mode)


def atomic_write(path: Path, content: bytes, mode: int) -> None:
    """Replace ``path`` with ``content`` via a temp file in the same directory."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class RemediationEngine:
    """Creates snapshots, applies fixes and rolls them back.

    Attributes:
        environ: Environment mapping captured and restored by env targets.
        lock_timeout: Seconds to wait for a target held by another snapshot.
    """

    def __init__(
        self,
        environ: MutableMapping[str, str] | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.environ: MutableMapping[str, str] = environ if environ is not None else os.environ
        self.lock_timeout = lock_timeout
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._active: dict[str, Snapshot] = {}

    @property
    def active_snapshots(self) -> list[Snapshot]:
        with self._locks_guard:
            return list(self._active.values())

    # -- locking ---------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _acquire(self, keys: list[str]) -> None:
        # Sorted acquisition keeps overlapping snapshots deadlock-free
        acquired: list[str] = []
        for key in keys:
            if not self._lock_for(key).acquire(timeout=self.lock_timeout):
                self._release(acquired)
                raise SnapshotError(f"Target {key.split(':', 1)[1]} is held by another remediation")
            acquired.append(key)

    def _release(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._lock_for(key).release()

    def _finish(self, snapshot: Snapshot, state: SnapshotState) -> None:
        snapshot.state = state
        with self._locks_guard:
            self._active.pop(snapshot.snapshot_id, None)
        self._release(snapshot.lock_keys)

    # -- triad -----------------------------------------------------------------

    def create_snapshot(self, targets: Iterable[Target]) -> Snapshot:
        """Capture the current state of every target.

        Fails closed: if any target cannot be captured, no snapshot is
        created and every lock taken so far is released.

        Raises:
            SnapshotError: If a target is unreadable or held elsewhere.
        """
        unique = {t.lock_key: t for t in targets}
        if not unique:
            raise SnapshotError("A snapshot needs at least one target")
        keys = sorted(unique)
        self._acquire(keys)

        snapshot = Snapshot(snapshot_id=uuid.uuid4().hex, created_at=utcnow(), lock_keys=tuple(keys))
        try:
            for key in keys:
                target = unique[key]
                if target.kind == "file":
                    path = Path(target.key)
                    snapshot.captured_files[path] = capture_file(path)
                else:
                    snapshot.captured_env[target.key] = self.environ.get(target.key)
        except BaseException:
            self._release(keys)
            raise

        with self._locks_guard:
            self._active[snapshot.snapshot_id] = snapshot
        logger.debug("Created snapshot %s for %s", snapshot.snapshot_id, ", ".join(snapshot.targets))
        return snapshot

    def apply_fix(self, snapshot: Snapshot, mutation: Callable[[], object]) -> None:
        """Run ``mutation`` under ``snapshot``.

        On success the snapshot is discarded. On failure it is rolled back
        before the error is raised.

        Raises:
            SnapshotError: If the snapshot is not active.
            RemediationError: If the mutation failed (state was restored).
            RollbackError: If the mutation failed and restoring failed too.
        """
        if snapshot.state is not SnapshotState.ACTIVE:
            raise SnapshotError(f"Snapshot {snapshot.snapshot_id} is {snapshot.state.value}")
        try:
            mutation()
        except BaseException as e:
            logger.warning("Fix failed, rolling back snapshot %s: %s", snapshot.snapshot_id, e)
            self.rollback(snapshot)
            if not isinstance(e, Exception):
                raise
            raise RemediationError(str(e) or type(e).__name__) from e
        self.discard(snapshot)

    def discard(self, snapshot: Snapshot) -> None:
        """Drop a snapshot after a successful fix."""
        if snapshot.state is SnapshotState.ACTIVE:
            self._finish(snapshot, SnapshotState.DISCARDED)

    def rollback(self, snapshot: Snapshot) -> None:
        """Restore every captured file and environment value.

        Idempotent: rolling back a restored snapshot does nothing.

        Raises:
            SnapshotError: If the snapshot was already discarded.
            RollbackError: If any target could not be restored.
        """
        if snapshot.state is SnapshotState.RESTORED:
            return
        if snapshot.state is SnapshotState.DISCARDED:
            raise SnapshotError(f"Snapshot {snapshot.snapshot_id} was discarded and cannot be restored")

        unrestored: list[str] = []
        errors: list[str] = []
        try:
            for path, captured in snapshot.captured_files.items():
                try:
                    self._restore_file(captured)
                except OSError as e:
                    unrestored.append(str(path))
                    errors.append(str(e))
            for key, value in snapshot.captured_env.items():
                if value is None:
                    self.environ.pop(key, None)
                else:
                    self.environ[key] = value
        finally:
            self._finish(snapshot, SnapshotState.RESTORED)

        if unrestored:
            raise RollbackError(unrestored, "; ".join(errors))
        logger.debug("Rolled back snapshot %s", snapshot.snapshot_id)

    def _restore_file(self, captured: CapturedFile) -> None:
        path = captured.path
        if not captured.existed:
            if path.is_dir() and not path.is_symlink():
                # A fix created a directory; only remove it if it is still empty
                path.rmdir()
            else:
                path.unlink(missing_ok=True)
            return
        mode = captured.mode if captured.mode is not None else 0o644
        if captured.is_dir:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(path, captured.content or b"", mode)

    def remediate(self, targets: Iterable[Target], mutation: Callable[[], object]) -> None:
        """Snapshot ``targets``, then apply ``mutation`` under that snapshot.

        Raises:
            SnapshotError: If the snapshot could not be created (no mutation ran).
            RemediationError: If the mutation failed (state was restored).
            RollbackError: If restoring failed.
        """
        snapshot = self.create_snapshot(targets)
        self.apply_fix(snapshot, mutation)
