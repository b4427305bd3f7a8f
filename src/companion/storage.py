"""
Conversation persistence.

``ConversationRepository`` is the contract the turn pipeline consumes;
``SqliteConversationStore`` is the default implementation. Messages are
append-only and read back in insertion order.
"""
from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol, Sequence

from .config import DB_PATH
from .db_migrations import apply_sqlite_migrations
from .errors import NotFoundError, PersistenceError, ValidationError
from .models import Message, Session, SessionStatus, utcnow_iso
from .observability import get_logger

logger = get_logger(__name__)

STORE_COMPONENT = "conversation_store"


class ConversationRepository(Protocol):
    def create_session(self, owner_id: str, session_id: str | None = None) -> Session:
        ...

    def find_session_by_id(self, session_id: str) -> Session | None:
        ...

    def append_messages(
        self, session_id: str, messages: Sequence[Message], status: SessionStatus | None = None
    ):
        ...

    def list_sessions(self, owner_id: str) -> list[Session]:
        ...

    def update_status(self, session_id: str, status: SessionStatus):
        ...

    def purge_empty_sessions(self, older_than_s: int) -> int:
        ...


def _json_loads_or_none(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("message_metadata_undecodable")
        return None
    return value if isinstance(value, dict) else None


class SqliteConversationStore:
    """SQLite-backed session and message store shared by all request threads."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else Path(DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            pass
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component=STORE_COMPONENT)

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open conversation store at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise PersistenceError("conversation store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(str(exc)) from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_messages(self, conn: sqlite3.Connection, session_id: str) -> list[Message]:
        rows = conn.execute(
            """
            SELECT role, content, created_at, metadata_json
            FROM messages
            WHERE session_id = ?
            ORDER BY id ASC
            """,
            (session_id,),
        ).fetchall()
        return [
            Message(
                role=row["role"],
                content=row["content"],
                created_at=row["created_at"],
                metadata=_json_loads_or_none(row["metadata_json"]),
            )
            for row in rows
        ]

    def _session_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Session:
        return Session(
            session_id=row["session_id"],
            owner_id=row["owner_id"],
            status=SessionStatus(row["status"]),
            created_at=row["created_at"],
            messages=self._load_messages(conn, row["session_id"]),
        )

    def find_session_by_id(self, session_id: str) -> Session | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT session_id, owner_id, status, created_at FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                return None
            return self._session_from_row(conn, row)

    def list_sessions(self, owner_id: str) -> list[Session]:
        """Owner's sessions, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT session_id, owner_id, status, created_at
                FROM sessions
                WHERE owner_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (owner_id,),
            ).fetchall()
            return [self._session_from_row(conn, row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_session(self, owner_id: str, session_id: str | None = None) -> Session:
        sid = str(session_id).strip() if session_id else uuid.uuid4().hex
        if not sid:
            raise ValidationError("session id must not be blank")
        now = utcnow_iso()
        with self._connection() as conn:
            exists = conn.execute("SELECT 1 FROM sessions WHERE session_id = ?", (sid,)).fetchone()
            if exists:
                raise ValidationError(f"session {sid} already exists")
            conn.execute(
                """
                INSERT INTO sessions (session_id, owner_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (sid, owner_id, SessionStatus.ACTIVE.value, now, now),
            )
        logger.info("session_created", session_id=sid)
        return Session(session_id=sid, owner_id=owner_id, status=SessionStatus.ACTIVE, created_at=now)

    def append_messages(
        self, session_id: str, messages: Sequence[Message], status: SessionStatus | None = None
    ):
        """Appends all messages in one transaction, or none of them.

        A ``status``, when given, is written in the same transaction.
        """
        for message in messages:
            if message.role not in {"user", "assistant"}:
                raise ValidationError(f"unsupported message role: {message.role!r}")
            if not (message.content or "").strip():
                raise ValidationError("message content must not be empty")

        with self._connection() as conn:
            exists = conn.execute("SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
            if not exists:
                raise NotFoundError(f"session {session_id} not found")
            conn.executemany(
                """
                INSERT INTO messages (session_id, role, content, created_at, metadata_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        session_id,
                        m.role,
                        m.content.strip(),
                        m.created_at,
                        json.dumps(m.metadata, ensure_ascii=True) if m.metadata else None,
                    )
                    for m in messages
                ],
            )
            if status is None:
                conn.execute(
                    "UPDATE sessions SET updated_at = ? WHERE session_id = ?",
                    (utcnow_iso(), session_id),
                )
            else:
                conn.execute(
                    "UPDATE sessions SET status = ?, updated_at = ? WHERE session_id = ?",
                    (SessionStatus(status).value, utcnow_iso(), session_id),
                )
        if status is not None:
            logger.info("session_status_changed", session_id=session_id, status=SessionStatus(status).value)

    def update_status(self, session_id: str, status: SessionStatus):
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE session_id = ?",
                (SessionStatus(status).value, utcnow_iso(), session_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"session {session_id} not found")
        logger.info("session_status_changed", session_id=session_id, status=SessionStatus(status).value)

    def purge_empty_sessions(self, older_than_s: int) -> int:
        """Deletes sessions with no non-empty message created more than ``older_than_s`` ago."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max(0, int(older_than_s)))).isoformat(
            timespec="seconds"
        )
        with self._connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM sessions
                WHERE created_at < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM messages
                      WHERE messages.session_id = sessions.session_id
                        AND TRIM(messages.content) != ''
                  )
                """,
                (cutoff,),
            )
            deleted = int(cursor.rowcount or 0)
        if deleted:
            logger.info("empty_sessions_purged", count=deleted, cutoff=cutoff)
        return deleted
