from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteMemoryDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    @property
    def write_lock(self) -> threading.Lock:
        return self._lock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                  id TEXT PRIMARY KEY,
                  email TEXT UNIQUE NOT NULL,
                  password_hash TEXT NOT NULL,
                  name TEXT NOT NULL,
                  role TEXT NOT NULL CHECK (role IN ('patient', 'doctor')),
                  phone TEXT,
                  is_verified INTEGER NOT NULL DEFAULT 0,
                  specialization TEXT,
                  license_number TEXT UNIQUE,
                  doctor_consent INTEGER NOT NULL DEFAULT 0,
                  patient_id TEXT UNIQUE,
                  date_of_birth TEXT,
                  gender TEXT,
                  data_consent INTEGER NOT NULL DEFAULT 0,
                  consent_date TEXT,
                  medical_history_json TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_sessions (
                  id TEXT PRIMARY KEY,
                  session_id TEXT UNIQUE NOT NULL,
                  patient_id TEXT NOT NULL,
                  patient_name TEXT,
                  patient_email TEXT,
                  status TEXT NOT NULL DEFAULT 'active',
                  summary TEXT,
                  tags_json TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_messages (
                  id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL REFERENCES chat_sessions(session_id) ON DELETE CASCADE,
                  seq INTEGER NOT NULL,
                  sender TEXT NOT NULL CHECK (sender IN ('patient', 'ai')),
                  content TEXT NOT NULL,
                  explanation TEXT,
                  message_type TEXT NOT NULL DEFAULT 'text',
                  file_url TEXT,
                  file_name TEXT,
                  file_type TEXT,
                  timestamp TEXT NOT NULL,
                  UNIQUE(session_id, seq)
                );

                CREATE TABLE IF NOT EXISTS uploads (
                  id TEXT PRIMARY KEY,
                  patient_id TEXT NOT NULL,
                  session_id TEXT NOT NULL,
                  file_name TEXT NOT NULL,
                  original_name TEXT NOT NULL,
                  file_type TEXT NOT NULL,
                  file_size INTEGER NOT NULL,
                  file_path TEXT NOT NULL,
                  file_url TEXT NOT NULL,
                  category TEXT NOT NULL,
                  extracted_text TEXT,
                  ai_analysis TEXT,
                  metadata_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_chat_sessions_patient_updated
                  ON chat_sessions(patient_id, updated_at DESC);
                CREATE INDEX IF NOT EXISTS idx_uploads_patient_created
                  ON uploads(patient_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_uploads_session
                  ON uploads(session_id);
                """
            )
