"""Lease-based mutual exclusion for task claims.

Leases are created with an exclusive primitive (hard-linking a fully written temp
file into place), never check-then-create. A lease older than the configured
timeout is stale: any worker may reclaim it. Reclaim is compare-and-delete on
the lease token, so a lease that was renewed or replaced in the meantime is
never removed by mistake.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import Lease, LockOutcome
from taskrelay.storage.common import atomic_write_text, from_iso, utc_now

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
SLOT_PREFIX = ".worker-"
SLOT_SUFFIX = ".active"
DEFAULT_MAX_WORKER_SLOTS = 100


class CorruptLeaseError(ValueError):
    """Lease record exists but cannot be decoded."""


class LeaseBackend(Protocol):
    """Storage primitive behind :class:`LockManager`."""

    def create(self, lease: Lease) -> bool:
        """Exclusively create a lease; False when one already exists."""

    def read(self, task_id: str) -> Lease | None:
        """Current lease or None; raises CorruptLeaseError for unreadable records."""

    def replace(self, lease: Lease) -> None:
        """Overwrite the lease record (renewal by its owner)."""

    def delete_if(self, task_id: str, lease_id: str | None) -> bool:
        """Delete only if the stored token equals ``lease_id`` (None matches a corrupt record)."""

    def task_ids(self) -> list[str]:
        """Ids with a lease record present."""


class FileLeaseBackend:
    """One JSON lease file per task under ``locks_dir``."""

    def __init__(self, locks_dir: Path) -> None:
        self.locks_dir = locks_dir

    def path_for(self, task_id: str) -> Path:
        return self.locks_dir / f"{task_id}{LOCK_SUFFIX}"

    def create(self, lease: Lease) -> bool:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{lease.task_id}.", dir=self.locks_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(_encode_lease(lease))
                handle.flush()
                os.fsync(handle.fileno())
            try:
                os.link(tmp_name, self.path_for(lease.task_id))
            except FileExistsError:
                return False
            return True
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def read(self, task_id: str) -> Lease | None:
        return _read_lease_file(self.path_for(task_id))

    def replace(self, lease: Lease) -> None:
        atomic_write_text(self.path_for(lease.task_id), _encode_lease(lease))

    def delete_if(self, task_id: str, lease_id: str | None) -> bool:
        path = self.path_for(task_id)
        tombstone = self.locks_dir / f".{task_id}.{uuid.uuid4().hex}.reclaim"
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return False

        try:
            current = _read_lease_file(tombstone)
            matches = current is not None and current.lease_id == lease_id
        except CorruptLeaseError:
            matches = lease_id is None

        if matches:
            tombstone.unlink(missing_ok=True)
            return True

        # Someone renewed or re-created the lease between our read and rename.
        try:
            os.link(tombstone, path)
        except FileExistsError:
            logger.error("Could not restore lease for %s: a newer lease appeared.", task_id)
        finally:
            tombstone.unlink(missing_ok=True)
        return False

    def task_ids(self) -> list[str]:
        if not self.locks_dir.is_dir():
            return []
        return sorted(
            path.name[: -len(LOCK_SUFFIX)]
            for path in self.locks_dir.iterdir()
            if path.name.endswith(LOCK_SUFFIX) and not path.name.startswith(".")
        )


class InMemoryLeaseBackend:
    """Thread-safe dictionary backend used by tests."""

    def __init__(self) -> None:
        self._leases: dict[str, Lease | None] = {}
        self._lock = threading.Lock()

    def create(self, lease: Lease) -> bool:
        with self._lock:
            if lease.task_id in self._leases:
                return False
            self._leases[lease.task_id] = _copy_lease(lease)
            return True

    def read(self, task_id: str) -> Lease | None:
        with self._lock:
            if task_id not in self._leases:
                return None
            lease = self._leases[task_id]
            if lease is None:
                raise CorruptLeaseError(f"corrupt lease for {task_id}")
            return _copy_lease(lease)

    def replace(self, lease: Lease) -> None:
        with self._lock:
            self._leases[lease.task_id] = _copy_lease(lease)

    def delete_if(self, task_id: str, lease_id: str | None) -> bool:
        with self._lock:
            if task_id not in self._leases:
                return False
            current = self._leases[task_id]
            current_id = current.lease_id if current is not None else None
            if current_id != lease_id:
                return False
            del self._leases[task_id]
            return True

    def task_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._leases)

    def corrupt(self, task_id: str) -> None:
        """Simulate an unreadable lease record."""

        with self._lock:
            self._leases[task_id] = None


class LockManager:
    """Acquire, renew and release per-task leases. Never blocks."""

    def __init__(
        self,
        backend: LeaseBackend,
        *,
        lease_timeout_seconds: int,
        clock: Callable[[], datetime] = utc_now,
        pid: int | None = None,
    ) -> None:
        if lease_timeout_seconds <= 0:
            raise ValueError("lease_timeout_seconds must be > 0.")
        self.backend = backend
        self.lease_timeout_seconds = lease_timeout_seconds
        self._clock = clock
        self._pid = pid if pid is not None else os.getpid()

    def acquire(self, task_id: str, worker_id: str) -> LockOutcome:
        """Try once to claim ``task_id``; a stale lease is reclaimed and creation retried once."""

        for _ in range(2):
            lease = Lease(
                task_id=task_id,
                owner=worker_id,
                acquired_at=self._clock(),
                lease_id=uuid.uuid4().hex,
                pid=self._pid,
            )
            if self.backend.create(lease):
                logger.debug("Lease acquired: task=%s owner=%s", task_id, worker_id)
                return LockOutcome.ACQUIRED

            try:
                existing = self.backend.read(task_id)
            except CorruptLeaseError:
                logger.warning("Reclaiming corrupt lease for task %s", task_id)
                self.backend.delete_if(task_id, None)
                continue
            if existing is None:
                continue
            if self._is_valid(existing):
                if existing.owner == worker_id:
                    self._refresh(existing)
                    return LockOutcome.ACQUIRED
                return LockOutcome.ALREADY_HELD

            logger.info(
                "Reclaiming stale lease: task=%s owner=%s age=%.0fs",
                task_id,
                existing.owner,
                existing.age_seconds(self._clock()),
            )
            self.backend.delete_if(task_id, existing.lease_id)
        return LockOutcome.ALREADY_HELD

    def is_locked(self, task_id: str) -> bool:
        """True when a valid lease exists; stale leases are removed as a side effect."""

        return self._valid_lease(task_id) is not None

    def owner_of(self, task_id: str) -> str | None:
        lease = self._valid_lease(task_id)
        return lease.owner if lease is not None else None

    def release(self, task_id: str, worker_id: str) -> bool:
        """Remove the caller's lease. Idempotent; a foreign lease is left untouched."""

        try:
            existing = self.backend.read(task_id)
        except CorruptLeaseError:
            logger.warning("Leaving corrupt lease for task %s to stale reclaim", task_id)
            return False
        if existing is None:
            return False
        if existing.owner != worker_id:
            logger.warning(
                "LockOwnershipMismatch: %s tried to release task %s owned by %s",
                worker_id,
                task_id,
                existing.owner,
            )
            return False
        removed = self.backend.delete_if(task_id, existing.lease_id)
        if removed:
            logger.debug("Lease released: task=%s owner=%s", task_id, worker_id)
        return removed

    def renew(self, task_id: str, worker_id: str) -> bool:
        """Heartbeat: refresh a still-valid lease owned by the caller."""

        try:
            existing = self.backend.read(task_id)
        except CorruptLeaseError:
            return False
        if existing is None or existing.owner != worker_id:
            return False
        if not self._is_valid(existing):
            logger.warning("Lease for task %s expired before renewal by %s", task_id, worker_id)
            return False
        self._refresh(existing)
        return True

    def sweep(self) -> list[str]:
        """Remove every stale or corrupt lease; returns the affected task ids."""

        removed: list[str] = []
        for task_id in self.backend.task_ids():
            try:
                lease = self.backend.read(task_id)
            except CorruptLeaseError:
                if self.backend.delete_if(task_id, None):
                    removed.append(task_id)
                continue
            if lease is None or self._is_valid(lease):
                continue
            if self.backend.delete_if(task_id, lease.lease_id):
                removed.append(task_id)
        if removed:
            logger.info("Swept %d stale lease(s): %s", len(removed), ", ".join(removed))
        return removed

    def list_leases(self) -> list[tuple[Lease, bool]]:
        """All readable leases with their validity, without reclaiming anything."""

        leases: list[tuple[Lease, bool]] = []
        for task_id in self.backend.task_ids():
            try:
                lease = self.backend.read(task_id)
            except CorruptLeaseError:
                continue
            if lease is not None:
                leases.append((lease, self._is_valid(lease)))
        return leases

    def _valid_lease(self, task_id: str) -> Lease | None:
        try:
            lease = self.backend.read(task_id)
        except CorruptLeaseError:
            self.backend.delete_if(task_id, None)
            return None
        if lease is None:
            return None
        if self._is_valid(lease):
            return lease
        logger.info("Removing stale lease on read: task=%s owner=%s", task_id, lease.owner)
        self.backend.delete_if(task_id, lease.lease_id)
        return None

    def _is_valid(self, lease: Lease) -> bool:
        return lease.is_valid(now=self._clock(), timeout_seconds=self.lease_timeout_seconds)

    def _refresh(self, lease: Lease) -> None:
        # A new token makes a reclaimer holding the pre-renewal copy miss on delete.
        lease.lease_id = uuid.uuid4().hex
        lease.acquired_at = self._clock()
        lease.pid = self._pid
        self.backend.replace(lease)


@dataclass(slots=True)
class WorkerSlot:
    """A reserved ``worker-N`` identity held by one live process."""

    worker_id: str
    path: Path
    pid: int

    def release(self) -> None:
        if _read_slot_pid(self.path) == self.pid:
            self.path.unlink(missing_ok=True)


def claim_worker_slot(
    locks_dir: Path,
    *,
    max_slots: int = DEFAULT_MAX_WORKER_SLOTS,
    pid: int | None = None,
) -> WorkerSlot:
    """Reserve the lowest free ``worker-N`` slot, reclaiming slots of dead processes."""

    owner_pid = pid if pid is not None else os.getpid()
    locks_dir.mkdir(parents=True, exist_ok=True)
    for number in range(1, max_slots + 1):
        worker_id = f"worker-{number}"
        path = locks_dir / f"{SLOT_PREFIX}{number}{SLOT_SUFFIX}"
        for _ in range(2):
            if _create_slot(path, owner_pid):
                return WorkerSlot(worker_id=worker_id, path=path, pid=owner_pid)
            holder = _read_slot_pid(path)
            if holder is None or _pid_alive(holder):
                break
            logger.info("Reclaiming worker slot %s from dead process %s", worker_id, holder)
            path.unlink(missing_ok=True)
    raise RuntimeError(f"No free worker slot among {max_slots} in {locks_dir}")


def _create_slot(path: Path, pid: int) -> bool:
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"{pid}\n")
    return True


def _read_slot_pid(path: Path) -> int | None:
    try:
        return int(path.read_text("utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as error:
        return error.errno != errno.ESRCH
    return True


def _encode_lease(lease: Lease) -> str:
    return json.dumps(
        {
            "task_id": lease.task_id,
            "owner": lease.owner,
            "pid": lease.pid,
            "acquired_at": lease.acquired_at.isoformat(),
            "lease_id": lease.lease_id,
        },
        indent=2,
        sort_keys=True,
    )


def _read_lease_file(path: Path) -> Lease | None:
    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    try:
        payload = json.loads(raw)
        return Lease(
            task_id=str(payload["task_id"]),
            owner=str(payload["owner"]),
            acquired_at=from_iso(str(payload["acquired_at"])),
            lease_id=str(payload["lease_id"]),
            pid=int(payload["pid"]) if payload.get("pid") is not None else None,
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
        raise CorruptLeaseError(f"{path}: {error}") from error


def _copy_lease(lease: Lease) -> Lease:
    return Lease(
        task_id=lease.task_id,
        owner=lease.owner,
        acquired_at=lease.acquired_at,
        lease_id=lease.lease_id,
        pid=lease.pid,
    )
