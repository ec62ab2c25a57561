from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now

UPLOAD_CATEGORIES = {"image", "audio", "video", "document", "other"}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _upload_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "patient_id": row["patient_id"],
        "session_id": row["session_id"],
        "file_name": row["file_name"],
        "original_name": row["original_name"],
        "file_type": row["file_type"],
        "file_size": row["file_size"],
        "file_path": row["file_path"],
        "file_url": row["file_url"],
        "category": row["category"],
        "extracted_text": row["extracted_text"],
        "ai_analysis": row["ai_analysis"],
        "metadata": json.loads(row["metadata_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def category_for_mime(mime_type: str) -> str:
    mime = (mime_type or "").lower().strip()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("audio/"):
        return "audio"
    if mime.startswith("video/"):
        return "video"
    if mime == "application/pdf" or "document" in mime or "msword" in mime or mime == "text/plain":
        return "document"
    return "other"


class UploadStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def create_upload(
        self,
        *,
        patient_id: str,
        session_id: str,
        file_name: str,
        original_name: str,
        file_type: str,
        file_size: int,
        file_path: str,
        file_url: str,
        category: str,
    ) -> dict[str, Any]:
        if category not in UPLOAD_CATEGORIES:
            raise ValueError(f"Invalid upload category: {category}")
        upload_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO uploads (
                  id, patient_id, session_id, file_name, original_name, file_type, file_size,
                  file_path, file_url, category, metadata_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    upload_id,
                    patient_id,
                    session_id,
                    file_name,
                    original_name,
                    file_type,
                    int(file_size),
                    file_path,
                    file_url,
                    category,
                    _json_dumps({}),
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM uploads WHERE id = ?", (upload_id,)).fetchone()
        return _upload_row(row)

    def store_analysis(
        self,
        upload_id: str,
        *,
        extracted_text: str | None,
        ai_analysis: str | None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE uploads
                SET extracted_text = COALESCE(?, extracted_text),
                    ai_analysis = COALESCE(?, ai_analysis),
                    metadata_json = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (extracted_text, ai_analysis, _json_dumps(metadata or {}), now, upload_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("Upload record not found.")
            row = conn.execute("SELECT * FROM uploads WHERE id = ?", (upload_id,)).fetchone()
        return _upload_row(row)

    def get_upload(self, upload_id: str, *, patient_id: str | None = None) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM uploads WHERE id = ?", (upload_id,)).fetchone()
        if row is None:
            return None
        if patient_id is not None and row["patient_id"] != patient_id:
            return None
        return _upload_row(row)

    def find_by_url(self, file_url: str, *, patient_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM uploads WHERE file_url = ? AND patient_id = ? LIMIT 1",
                (file_url, patient_id),
            ).fetchone()
        return _upload_row(row) if row else None

    def list_for_session(self, session_id: str, *, patient_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM uploads
                WHERE session_id = ? AND patient_id = ?
                ORDER BY created_at DESC
                """,
                (session_id, patient_id),
            ).fetchall()
        return [_upload_row(row) for row in rows]

    def list_for_patient(self, patient_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM uploads WHERE patient_id = ? ORDER BY created_at DESC",
                (patient_id,),
            ).fetchall()
        return [_upload_row(row) for row in rows]

    def delete_upload(self, upload_id: str, *, patient_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM uploads WHERE id = ? AND patient_id = ?",
                (upload_id, patient_id),
            )
            return cursor.rowcount > 0
