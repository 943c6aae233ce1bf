"""Per-worker session checkpoints for crash-safe resume."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

from taskrelay.orchestrator.models import Phase, SessionRecord, SessionStatus
from taskrelay.storage.common import atomic_write_text, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    def load(self, worker_id: str) -> SessionRecord | None:
        """Last saved session of ``worker_id``; None when absent or unreadable."""

    def save(self, record: SessionRecord) -> None:
        """Overwrite the worker's session record."""


class FileSessionStore:
    """``session-<worker_id>.json`` files under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    def path_for(self, worker_id: str) -> Path:
        return self.state_dir / f"session-{worker_id}.json"

    def load(self, worker_id: str) -> SessionRecord | None:
        path = self.path_for(worker_id)
        try:
            payload = json.loads(path.read_text("utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable session file %s: %s", path, error)
            return None
        try:
            return _session_from_payload(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Ignoring malformed session file %s: %s", path, error)
            return None

    def save(self, record: SessionRecord) -> None:
        atomic_write_text(
            self.path_for(record.worker_id),
            json.dumps(_session_to_payload(record), indent=2, sort_keys=True),
        )


class InMemorySessionStore:
    def __init__(self) -> None:
        self.records: dict[str, SessionRecord] = {}

    def load(self, worker_id: str) -> SessionRecord | None:
        record = self.records.get(worker_id)
        if record is None:
            return None
        return _session_from_payload(_session_to_payload(record))

    def save(self, record: SessionRecord) -> None:
        self.records[record.worker_id] = _session_from_payload(_session_to_payload(record))


class SessionRecorder:
    """Checkpoints (task, phase, status) on every phase transition."""

    def __init__(
        self,
        store: SessionStore,
        *,
        worker_id: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.worker_id = worker_id
        self._clock = clock
        self.session_id = uuid.uuid4().hex[:12]

    def load(self) -> SessionRecord | None:
        return self.store.load(self.worker_id)

    def checkpoint(self, *, task_id: str, phase: Phase, status: SessionStatus) -> SessionRecord:
        record = SessionRecord(
            worker_id=self.worker_id,
            session_id=self.session_id,
            status=status,
            updated_at=self._clock(),
            task_id=task_id,
            phase=phase,
        )
        self.store.save(record)
        logger.debug(
            "Session checkpoint: worker=%s task=%s phase=%s status=%s",
            self.worker_id,
            task_id,
            phase.label,
            status.value,
        )
        return record

    def mark(self, status: SessionStatus) -> SessionRecord | None:
        """Change status of the current checkpoint, keeping task and phase."""

        current = self.store.load(self.worker_id)
        if current is None:
            return None
        current.status = status
        current.updated_at = self._clock()
        self.store.save(current)
        return current

    def clear(self) -> SessionRecord:
        """Record an idle session with no task."""

        record = SessionRecord(
            worker_id=self.worker_id,
            session_id=self.session_id,
            status=SessionStatus.IDLE,
            updated_at=self._clock(),
        )
        self.store.save(record)
        return record


def _session_to_payload(record: SessionRecord) -> dict[str, object]:
    return {
        "worker_id": record.worker_id,
        "session_id": record.session_id,
        "status": record.status.value,
        "updated_at": to_iso(record.updated_at),
        "task_id": record.task_id,
        "phase": record.phase.value if record.phase is not None else None,
    }


def _session_from_payload(payload: dict[str, object]) -> SessionRecord:
    phase = payload.get("phase")
    task_id = payload.get("task_id")
    return SessionRecord(
        worker_id=str(payload["worker_id"]),
        session_id=str(payload["session_id"]),
        status=SessionStatus(str(payload["status"])),
        updated_at=from_iso(str(payload["updated_at"])),
        task_id=str(task_id) if task_id is not None else None,
        phase=Phase(str(phase)) if phase is not None else None,
    )
