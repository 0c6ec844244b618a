"""Session and turn persistence on top of the single-writer SQLite layer."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

from traxtutor.constants import DEFAULT_MODE, Mode
from traxtutor.errors import StorageUnavailable
from traxtutor.storage.db import SQLiteWriter

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    id: str
    user_id: str
    title: Optional[str]
    mode: Mode
    created_at: str
    # False for a session drafted for a first turn and not yet written.
    persisted: bool = True


@dataclass(frozen=True)
class Turn:
    id: str
    session_id: str
    user_id: str
    prompt: str
    response: str
    created_at: str


@dataclass(frozen=True)
class SessionSummary:
    id: str
    title: Optional[str]
    mode: Mode
    created_at: str
    last_response: Optional[str]


def _to_mode(value: str | None) -> Mode:
    try:
        return Mode(value)
    except ValueError:
        return DEFAULT_MODE


def _session_from_row(row: sqlite3.Row | tuple) -> Session:
    return Session(
        id=row[0],
        user_id=row[1],
        title=row[2],
        mode=_to_mode(row[3]),
        created_at=row[4],
    )


def _turn_from_row(row: sqlite3.Row | tuple) -> Turn:
    return Turn(
        id=row[0],
        session_id=row[1],
        user_id=row[2],
        prompt=row[3],
        response=row[4],
        created_at=row[5],
    )


_SESSION_COLUMNS = "id, user_id, title, mode, created_at"
_TURN_COLUMNS = "id, session_id, user_id, prompt, response, created_at"


def _insert_session(
    conn: sqlite3.Connection,
    session_id: str,
    owner: str,
    title: Optional[str],
    mode: Mode,
) -> None:
    conn.execute(
        "INSERT INTO sessions (id, user_id, title, mode) VALUES (?, ?, ?, ?)",
        (session_id, owner, title, mode.value),
    )


@contextmanager
def _storage_errors(operation: str) -> Generator[None, None, None]:
    try:
        yield
    except (sqlite3.Error, RuntimeError) as exc:
        _logger.error("store.%s_failed: %s", operation, exc)
        raise StorageUnavailable(f"{operation} failed: {exc}") from exc


class ChatStore:
    """Read/write contract for sessions, turns and per-user mode preferences.

    Writes are serialised through :class:`SQLiteWriter`; reads use short-lived
    connections. Every storage failure surfaces as :class:`StorageUnavailable`.
    """

    def __init__(self, db: SQLiteWriter) -> None:
        self._db = db

    # Sessions

    def draft_session(self, owner: str, mode: Mode = DEFAULT_MODE) -> Session:
        """Return an unsaved session; it is written together with its first turn."""
        return Session(
            id=str(uuid.uuid4()),
            user_id=owner,
            title=None,
            mode=Mode(mode),
            created_at="",
            persisted=False,
        )

    def create_session(self, owner: str, title: Optional[str] = None, mode: Mode = DEFAULT_MODE) -> Session:
        session_id = str(uuid.uuid4())

        def _insert(conn: sqlite3.Connection) -> tuple:
            _insert_session(conn, session_id, owner, title, Mode(mode))
            return conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()

        with _storage_errors("create_session"):
            row = self._db.run_write(_insert)
        return _session_from_row(row)

    def get_session(self, session_id: str) -> Session | None:
        with _storage_errors("get_session"):
            with self._db.read_connection() as conn:
                row = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
                    (session_id,),
                ).fetchone()
        if row is None:
            return None
        return _session_from_row(row)

    def list_sessions(self, owner: str) -> list[SessionSummary]:
        """Return the owner's sessions, newest first, with their latest response blob."""
        with _storage_errors("list_sessions"):
            with self._db.read_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT s.id, s.title, s.mode, s.created_at,
                        (
                            SELECT t.response FROM turns t
                            WHERE t.session_id = s.id
                            ORDER BY t.created_at DESC, t.rowid DESC
                            LIMIT 1
                        )
                    FROM sessions s
                    WHERE s.user_id = ?
                    ORDER BY s.created_at DESC, s.rowid DESC
                    """,
                    (owner,),
                ).fetchall()
        return [
            SessionSummary(
                id=row[0],
                title=row[1],
                mode=_to_mode(row[2]),
                created_at=row[3],
                last_response=row[4],
            )
            for row in rows
        ]

    def update_session_title(self, session_id: str, title: str, only_if_unset: bool = False) -> bool:
        """Set a session title.

        Parameters
        ----------
        session_id : str
            Session identifier.
        title : str
            New title.
        only_if_unset : bool
            When True the write is skipped if a title is already stored.

        Returns
        -------
        bool
            True if a row was updated.
        """
        if not only_if_unset:
            with _storage_errors("update_session_title"):
                return self._db.execute_update("sessions", {"title": title}, session_id) > 0

        def _update(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                UPDATE sessions
                SET title = ?, updated_at = datetime('now')
                WHERE id = ? AND title IS NULL
                """,
                (title, session_id),
            )
            return cursor.rowcount

        with _storage_errors("update_session_title"):
            return self._db.run_write(_update) > 0

    def update_session_mode(self, session_id: str, mode: Mode) -> bool:
        with _storage_errors("update_session_mode"):
            return self._db.execute_update("sessions", {"mode": Mode(mode).value}, session_id) > 0

    def delete_session_cascade(self, session_id: str) -> bool:
        """Delete a session and, through the foreign key cascade, all its turns."""

        def _delete(conn: sqlite3.Connection) -> int:
            conn.execute("DELETE FROM turns WHERE session_id = ?", (session_id,))
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount

        with _storage_errors("delete_session"):
            return self._db.run_write(_delete) > 0

    # Turns

    def list_turns(self, session_id: str) -> list[Turn]:
        """Return every turn of a session in creation order (insertion order on ties)."""
        with _storage_errors("list_turns"):
            with self._db.read_connection() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_TURN_COLUMNS}
                    FROM turns
                    WHERE session_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    """,
                    (session_id,),
                ).fetchall()
        return [_turn_from_row(row) for row in rows]

    def first_turn(self, session_id: str) -> Turn | None:
        with _storage_errors("first_turn"):
            with self._db.read_connection() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_TURN_COLUMNS}
                    FROM turns
                    WHERE session_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    (session_id,),
                ).fetchone()
        if row is None:
            return None
        return _turn_from_row(row)

    def create_turn(self, session: Session, owner: str, prompt: str, response_blob: str) -> Turn:
        """Append a turn; a draft session is inserted in the same transaction."""
        turn_id = str(uuid.uuid4())

        def _insert(conn: sqlite3.Connection) -> tuple:
            if not session.persisted:
                _insert_session(conn, session.id, session.user_id, session.title, session.mode)
            conn.execute(
                """
                INSERT INTO turns (id, session_id, user_id, prompt, response)
                VALUES (?, ?, ?, ?, ?)
                """,
                (turn_id, session.id, owner, prompt, response_blob),
            )
            return conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE id = ?",
                (turn_id,),
            ).fetchone()

        with _storage_errors("create_turn"):
            row = self._db.run_write(_insert)
        return _turn_from_row(row)

    # Users

    def get_user_mode(self, owner: str) -> Mode:
        with _storage_errors("get_user_mode"):
            with self._db.read_connection() as conn:
                row = conn.execute("SELECT mode FROM users WHERE id = ?", (owner,)).fetchone()
        if row is None:
            return DEFAULT_MODE
        return _to_mode(row[0])

    def set_user_mode(self, owner: str, mode: Mode) -> None:
        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO users (id, mode) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET mode = excluded.mode, updated_at = datetime('now')
                """,
                (owner, Mode(mode).value),
            )

        with _storage_errors("set_user_mode"):
            self._db.run_write(_upsert)
