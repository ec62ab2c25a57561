from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import bcrypt
from jose import JWTError, jwt

from memory.time_utils import utc_now

JWT_ALGORITHM = "HS256"


class AuthError(Exception):
    pass


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str


class TokenService:
    """Issues and checks HS256 bearer tokens carrying the user id and role."""

    def __init__(self, secret: str, expire_minutes: int) -> None:
        self._secret = secret
        self._expire_minutes = expire_minutes

    def issue(self, user_id: str, role: str) -> str:
        expire = utc_now() + timedelta(minutes=self._expire_minutes)
        return jwt.encode({"sub": user_id, "role": role, "exp": expire}, self._secret, algorithm=JWT_ALGORITHM)

    def decode(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[JWT_ALGORITHM])
        except JWTError as exc:
            raise AuthError("Invalid or expired token.") from exc
        subject = payload.get("sub")
        role = payload.get("role")
        if not isinstance(subject, str) or not subject or not isinstance(role, str):
            raise AuthError("Token is missing required claims.")
        return TokenClaims(user_id=subject, role=role)
