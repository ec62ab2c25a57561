from __future__ import annotations

from .database import SQLiteMemoryDB
from .memory_policy_guard import MemoryPolicyGuard
from .session_store import ChatSessionStore
from .upload_store import UploadStore
from .user_store import UserStore


class MemoryService:
    def __init__(self, db: SQLiteMemoryDB) -> None:
        self.db = db
        self.guard = MemoryPolicyGuard()
        self.users = UserStore(db)
        self.sessions = ChatSessionStore(db)
        self.uploads = UploadStore(db)
