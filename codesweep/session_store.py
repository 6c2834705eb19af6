"""
Session Store

Keeps workflow sessions in memory and mirrors every write to one JSON
document per session under <state>/sessions/. Each session also has an
append-only JSONL event log next to it.

Writes go to a temp file that is atomically renamed over the document, so a
crash never leaves a half-written session behind. A failed write is logged as
a warning and the in-memory state is kept.

Mutations on one session id are serialized through a per-session re-entrant
lock (see ``lock()``). Cleanup never touches a session whose lock is held.
"""

import fcntl
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from .errors import SessionNotFound, WorkspaceNotBound
from .path_resolver import WorkspacePaths
from .schema import WorkflowEvent, WorkflowSession, WorkflowStatus, _utc_now

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({
    WorkflowStatus.INITIALIZING,
    WorkflowStatus.IN_PROGRESS,
    WorkflowStatus.BLOCKED,
})


class SessionStore:
    """In-memory session cache backed by per-session JSON documents."""

    def __init__(
        self,
        paths: Optional[WorkspacePaths] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.paths = paths
        self._clock = clock or _utc_now
        self._sessions: dict[str, WorkflowSession] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def bind(self, paths: WorkspacePaths) -> None:
        """Point the store at a workspace; the in-memory cache is dropped."""
        self.paths = paths
        self._sessions.clear()

    def _require_paths(self) -> WorkspacePaths:
        if self.paths is None:
            raise WorkspaceNotBound()
        return self.paths

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            if session_id not in self._locks:
                self._locks[session_id] = threading.RLock()
            return self._locks[session_id]

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Hold the per-session mutex for the duration of a mutation."""
        lock = self._lock_for(session_id)
        with lock:
            yield

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, session: WorkflowSession) -> WorkflowSession:
        """Store a new session and write it to disk."""
        self._require_paths()
        self._sessions[session.id] = session
        self._write(session)
        logger.debug(f"Created session {session.id}")
        return session

    def get(self, session_id: str) -> WorkflowSession:
        """
        Get a session from memory, falling back to its JSON document.

        Raises:
            SessionNotFound: If the id is unknown in memory and on disk
            WorkspaceNotBound: If a disk lookup is needed and no workspace is set
        """
        if session_id in self._sessions:
            return self._sessions[session_id]

        path = self._require_paths().session_file(session_id)
        session = self._read(path)
        if session is None:
            raise SessionNotFound(session_id)
        self._sessions[session_id] = session
        return session

    def update(self, session: WorkflowSession) -> WorkflowSession:
        """Bump updated_at, cache and persist (full overwrite)."""
        self._require_paths()
        session.updated_at = self._clock()
        self._sessions[session.id] = session
        self._write(session)
        return session

    def delete(self, session_id: str, keep_log: bool = False) -> bool:
        """Remove a session from memory and disk. Returns False if it did not exist."""
        paths = self._require_paths()
        existed = self._sessions.pop(session_id, None) is not None
        targets = [paths.session_file(session_id)]
        if not keep_log:
            targets.append(paths.log_file(session_id))
        for path in targets:
            try:
                if path.exists():
                    path.unlink()
                    existed = True
            except OSError as e:
                logger.warning(f"Failed to delete {path}: {e}")
        with self._locks_guard:
            self._locks.pop(session_id, None)
        return existed

    def list_sessions(self, active_only: bool = True) -> list[WorkflowSession]:
        """All known sessions (memory and disk), newest first."""
        sessions = dict(self._sessions)
        for session_id in self._disk_ids():
            if session_id not in sessions:
                session = self._read(self._require_paths().session_file(session_id))
                if session is not None:
                    self._sessions[session_id] = session
                    sessions[session_id] = session
        result = list(sessions.values())
        if active_only:
            result = [s for s in result if s.status in ACTIVE_STATUSES]
        return sorted(result, key=lambda s: s.created_at, reverse=True)

    def cleanup_expired(self, retention_days: int) -> list[str]:
        """
        Delete sessions whose updated_at is older than the retention window.

        Sessions currently locked by another mutation are left alone.

        Returns:
            Ids of the deleted sessions
        """
        cutoff = self._clock() - timedelta(days=retention_days)
        removed = []
        for session in self.list_sessions(active_only=False):
            if session.updated_at >= cutoff:
                continue
            lock = self._lock_for(session.id)
            if not lock.acquire(blocking=False):
                logger.debug(f"Skipping cleanup of locked session {session.id}")
                continue
            try:
                # Held until the files are gone; the age is rechecked under the lock.
                current = self._sessions.get(session.id, session)
                if current.updated_at < cutoff and self.delete(session.id):
                    removed.append(session.id)
            finally:
                lock.release()
        if removed:
            logger.info(f"Cleaned up {len(removed)} expired session(s)")
        return removed

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def log_event(self, event: WorkflowEvent) -> None:
        """Append an event to the session's JSONL log (with file locking)."""
        paths = self._require_paths()
        try:
            paths.ensure_dirs()
            with open(paths.log_file(event.session_id), "a") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.write(json.dumps(event.model_dump(mode="json"), default=str) + "\n")
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Failed to write event log for {event.session_id}: {e}")

    def get_events(self, session_id: str, limit: int = 100) -> list[WorkflowEvent]:
        """Read the most recent events for a session."""
        log_file = self._require_paths().log_file(session_id)
        if not log_file.exists():
            return []
        events = []
        with open(log_file, "r") as f:
            for line_num, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(WorkflowEvent(**json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Skipping corrupted event at {log_file}:{line_num}: {e}")
        return events[-limit:]

    # ------------------------------------------------------------------
    # Disk I/O
    # ------------------------------------------------------------------

    def _disk_ids(self) -> list[str]:
        sessions_dir = self._require_paths().sessions_dir()
        if not sessions_dir.exists():
            return []
        return sorted(p.stem for p in sessions_dir.glob("*.json"))

    def _write(self, session: WorkflowSession) -> None:
        paths = self._require_paths()
        target = paths.session_file(session.id)
        temp_file = target.with_suffix(".tmp")
        try:
            paths.ensure_dirs()
            with open(temp_file, "w") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    json.dump(session.model_dump(mode="json"), f, indent=2, default=str)
                    f.flush()
                    temp_file.replace(target)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Failed to persist session {session.id}: {e}")

    def _read(self, path: Path) -> Optional[WorkflowSession]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            return WorkflowSession.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load session from {path}: {e}")
            return None
