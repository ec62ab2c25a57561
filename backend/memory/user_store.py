from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Any

from .database import SQLiteMemoryDB
from .time_utils import to_iso, utc_now

ROLES = {"patient", "doctor"}
GENDERS = {"male", "female", "other", ""}


class DuplicateUserError(ValueError):
    """An email or license number is already registered."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is already registered")
        self.field = field


def _duplicate_field(exc: sqlite3.IntegrityError) -> str:
    return "license_number" if "license_number" in str(exc) else "email"


def _user_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": row["id"],
        "email": row["email"],
        "password_hash": row["password_hash"],
        "name": row["name"],
        "role": row["role"],
        "phone": row["phone"],
        "is_verified": bool(row["is_verified"]),
        "specialization": row["specialization"],
        "license_number": row["license_number"],
        "doctor_consent": bool(row["doctor_consent"]),
        "patient_id": row["patient_id"],
        "date_of_birth": row["date_of_birth"],
        "gender": row["gender"],
        "data_consent": bool(row["data_consent"]),
        "consent_date": row["consent_date"],
        "medical_history": json.loads(row["medical_history_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class UserStore:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self._db = db

    def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        name: str,
        role: str,
        phone: str | None = None,
        specialization: str | None = None,
        license_number: str | None = None,
        doctor_consent: bool = False,
        date_of_birth: str | None = None,
        gender: str | None = None,
        data_consent: bool = False,
    ) -> dict[str, Any]:
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        if gender is not None and gender not in GENDERS:
            raise ValueError(f"Invalid gender: {gender}")
        user_id = uuid.uuid4().hex
        now = to_iso(utc_now())
        # Patient ids are sequential, so allocation and insert share the write lock.
        with self._db.write_lock, self._db.connection() as conn:
            patient_id = None
            consent_date = None
            if role == "patient":
                count_row = conn.execute("SELECT COUNT(*) AS count FROM users WHERE role = 'patient'").fetchone()
                patient_id = f"PT{count_row['count'] + 1:06d}"
                if data_consent:
                    consent_date = now
            elif doctor_consent:
                consent_date = now
            try:
                conn.execute(
                    """
                    INSERT INTO users (
                      id, email, password_hash, name, role, phone, specialization, license_number,
                      doctor_consent, patient_id, date_of_birth, gender, data_consent, consent_date,
                      created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        name.strip(),
                        role,
                        phone,
                        specialization if role == "doctor" else None,
                        license_number if role == "doctor" else None,
                        1 if doctor_consent else 0,
                        patient_id,
                        date_of_birth if role == "patient" else None,
                        gender if role == "patient" else None,
                        1 if data_consent else 0,
                        consent_date,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUserError(_duplicate_field(exc)) from exc
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_row(row)

    def get_by_id(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_row(row) if row else None

    def get_by_email(self, email: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
        return _user_row(row) if row else None

    def get_patient(self, patient_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE patient_id = ? AND role = 'patient'",
                (patient_id,),
            ).fetchone()
        return _user_row(row) if row else None

    def license_in_use(self, license_number: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE license_number = ?", (license_number,)).fetchone()
        return row is not None

    def search_patients(self, query: str, *, limit: int = 20) -> list[dict[str, Any]]:
        needle = f"%{query.strip().lower()}%"
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE role = 'patient'
                  AND (lower(patient_id) LIKE ? OR lower(name) LIKE ? OR lower(email) LIKE ?)
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (needle, needle, needle, max(1, limit)),
            ).fetchall()
        return [_user_row(row) for row in rows]
