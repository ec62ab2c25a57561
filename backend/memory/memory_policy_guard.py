from __future__ import annotations

import re


class MemoryPolicyError(Exception):
    pass


class MemoryPolicyGuard:
    _SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")

    def ensure_session_scope(self, session_id: str) -> None:
        if not session_id or not self._SESSION_ID_RE.fullmatch(session_id):
            raise MemoryPolicyError("Invalid session scope.")
