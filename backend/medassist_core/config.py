from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_TEXT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_VISION_MODEL = "meta-llama/llama-4-scout-17b-16e-instruct"
DEFAULT_WHISPER_MODEL = "whisper-large-v3-turbo"


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class InferenceConfig:
    """Provider credentials and the fixed model bound to each modality."""

    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    text_model: str = DEFAULT_TEXT_MODEL
    vision_model: str = DEFAULT_VISION_MODEL
    whisper_model: str = DEFAULT_WHISPER_MODEL
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "InferenceConfig":
        return cls(
            api_key=(os.getenv("GROQ_API_KEY") or "").strip(),
            base_url=(os.getenv("GROQ_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/"),
            text_model=(os.getenv("MEDASSIST_TEXT_MODEL") or DEFAULT_TEXT_MODEL).strip(),
            vision_model=(os.getenv("MEDASSIST_VISION_MODEL") or DEFAULT_VISION_MODEL).strip(),
            whisper_model=(os.getenv("MEDASSIST_WHISPER_MODEL") or DEFAULT_WHISPER_MODEL).strip(),
            timeout_seconds=_env_float("MEDASSIST_INFERENCE_TIMEOUT_SECONDS", 60.0),
        )


@dataclass(frozen=True)
class AppSettings:
    db_path: str
    upload_dir: str
    jwt_secret: str
    jwt_expire_minutes: int = 60 * 24 * 7
    max_upload_files: int = 5
    max_upload_bytes: int = 50 * 1024 * 1024
    ffmpeg_binary: str = "ffmpeg"
    allowed_origins: tuple[str, ...] = field(default=("http://localhost:5173", "http://localhost:3000"))

    @classmethod
    def from_env(cls) -> "AppSettings":
        backend_dir = Path(__file__).resolve().parents[1]
        origins = [
            origin.strip()
            for origin in (os.getenv("ALLOWED_ORIGINS") or "").split(",")
            if origin.strip()
        ]
        frontend_url = (os.getenv("FRONTEND_URL") or "").strip()
        if frontend_url:
            origins.insert(0, frontend_url)
        return cls(
            db_path=os.getenv("MEDASSIST_DB_PATH", str(backend_dir / "medassist.sqlite")),
            upload_dir=os.getenv("MEDASSIST_UPLOAD_DIR", str(backend_dir / "uploads")),
            jwt_secret=os.getenv("JWT_SECRET", "change-me-in-production"),
            jwt_expire_minutes=_env_int("JWT_EXPIRE_MINUTES", 60 * 24 * 7),
            max_upload_bytes=_env_int("MEDASSIST_MAX_UPLOAD_BYTES", 50 * 1024 * 1024),
            ffmpeg_binary=(os.getenv("FFMPEG_BINARY") or "ffmpeg").strip(),
            allowed_origins=tuple(origins) or ("http://localhost:5173", "http://localhost:3000"),
        )
