from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from .database import SQLiteMemoryDB
from .memory_policy_guard import MemoryPolicyError
from .time_utils import to_iso, utc_now

SENDERS = {"patient", "ai"}
MESSAGE_TYPES = {"text", "image", "audio", "video", "document"}


class SessionLocks:
    """One lock per session id; turns on the same session run one at a time.

    Entries are reference counted and dropped when the last holder leaves,
    so the map only holds sessions with a turn in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(session_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[session_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[session_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _message_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "sender": row["sender"],
        "content": row["content"],
        "explanation": row["explanation"],
        "message_type": row["message_type"],
        "file_url": row["file_url"],
        "file_name": row["file_name"],
        "file_type": row["file_type"],
        "timestamp": row["timestamp"],
    }


def _session_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "session_id": row["session_id"],
        "patient_id": row["patient_id"],
        "patient_name": row["patient_name"],
        "patient_email": row["patient_email"],
        "status": row["status"],
        "summary": row["summary"],
        "tags": json.loads(row["tags_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class ChatSessionStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db
        self.locks = SessionLocks()

    def create_session(
        self,
        *,
        session_id: str,
        patient_id: str,
        patient_name: str | None = None,
        patient_email: str | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (
                  id, session_id, patient_id, patient_name, patient_email, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (uuid.uuid4().hex, session_id, patient_id, patient_name, patient_email, now, now),
            )
            row = conn.execute("SELECT * FROM chat_sessions WHERE session_id = ?", (session_id,)).fetchone()
        return _session_row(row) | {"messages": []}

    def find_or_create(
        self,
        *,
        session_id: str,
        patient_id: str,
        patient_name: str | None = None,
        patient_email: str | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (
                  id, session_id, patient_id, patient_name, patient_email, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO NOTHING
                """,
                (uuid.uuid4().hex, session_id, patient_id, patient_name, patient_email, now, now),
            )
            row = conn.execute("SELECT * FROM chat_sessions WHERE session_id = ?", (session_id,)).fetchone()
        if row["patient_id"] != patient_id:
            raise MemoryPolicyError("Cross-user access is blocked.")
        return _session_row(row)

    def get_session(self, session_id: str, *, patient_id: str | None = None) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM chat_sessions WHERE session_id = ?", (session_id,)).fetchone()
            if row is None:
                return None
            if patient_id is not None and row["patient_id"] != patient_id:
                return None
            messages = [
                _message_row(message)
                for message in conn.execute(
                    "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq ASC",
                    (session_id,),
                ).fetchall()
            ]
        return _session_row(row) | {"messages": messages}

    def recent_messages(self, session_id: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM chat_messages
                WHERE session_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (session_id, max(1, limit)),
            ).fetchall()
        return [_message_row(row) for row in reversed(rows)]

    def append_message(
        self,
        *,
        session_id: str,
        sender: str,
        content: str,
        message_type: str = "text",
        explanation: str | None = None,
        file_url: str | None = None,
        file_name: str | None = None,
        file_type: str | None = None,
    ) -> dict[str, Any]:
        if sender not in SENDERS:
            raise ValueError(f"Invalid sender: {sender}")
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Invalid message type: {message_type}")
        if sender == "patient" and explanation is not None:
            raise ValueError("Only AI messages carry an explanation.")
        if sender == "ai" and message_type != "text":
            raise ValueError("AI messages are always text.")
        if not content:
            raise ValueError("Message content is required.")

        message_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM chat_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if exists is None:
                raise ValueError("Chat session not found.")
            # seq is computed and written in one statement so concurrent writers cannot collide.
            conn.execute(
                """
                INSERT INTO chat_messages (
                  id, session_id, seq, sender, content, explanation, message_type,
                  file_url, file_name, file_type, timestamp
                )
                VALUES (
                  ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM chat_messages WHERE session_id = ?),
                  ?, ?, ?, ?, ?, ?, ?, ?
                )
                """,
                (
                    message_id,
                    session_id,
                    session_id,
                    sender,
                    content,
                    explanation,
                    message_type,
                    file_url,
                    file_name,
                    file_type,
                    now,
                ),
            )
            conn.execute(
                "UPDATE chat_sessions SET updated_at = ? WHERE session_id = ?",
                (now, session_id),
            )
            row = conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_id,)).fetchone()
        return _message_row(row)

    def list_sessions(self, patient_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            sessions = conn.execute(
                """
                SELECT * FROM chat_sessions
                WHERE patient_id = ?
                ORDER BY updated_at DESC
                """,
                (patient_id,),
            ).fetchall()
            result: list[dict[str, Any]] = []
            for row in sessions:
                count_row = conn.execute(
                    "SELECT COUNT(*) AS count FROM chat_messages WHERE session_id = ?",
                    (row["session_id"],),
                ).fetchone()
                last = conn.execute(
                    """
                    SELECT * FROM chat_messages
                    WHERE session_id = ?
                    ORDER BY seq DESC
                    LIMIT 1
                    """,
                    (row["session_id"],),
                ).fetchone()
                result.append(
                    _session_row(row)
                    | {
                        "message_count": count_row["count"],
                        "last_message": _message_row(last) if last else None,
                    }
                )
        return result

    def list_sessions_with_messages(self, patient_id: str) -> list[dict[str, Any]]:
        sessions = self.list_sessions(patient_id)
        detailed: list[dict[str, Any]] = []
        for session in sessions:
            full = self.get_session(session["session_id"], patient_id=patient_id)
            if full is not None:
                detailed.append(full | {"message_count": session["message_count"]})
        return detailed

    def delete_session(self, session_id: str, *, patient_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM chat_sessions WHERE session_id = ? AND patient_id = ?",
                (session_id, patient_id),
            )
            return cursor.rowcount > 0
