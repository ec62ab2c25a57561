from .database import SQLiteMemoryDB
from .memory_policy_guard import MemoryPolicyError, MemoryPolicyGuard
from .service import MemoryService
from .session_store import ChatSessionStore, SessionLocks
from .upload_store import UploadStore, category_for_mime
from .user_store import DuplicateUserError, UserStore

__all__ = [
    "SQLiteMemoryDB",
    "MemoryService",
    "MemoryPolicyGuard",
    "MemoryPolicyError",
    "ChatSessionStore",
    "DuplicateUserError",
    "SessionLocks",
    "UploadStore",
    "UserStore",
    "category_for_mime",
]
