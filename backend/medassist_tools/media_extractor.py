from __future__ import annotations

import base64
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from observability import get_logger

logger = get_logger(__name__)

IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
AUDIO_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/m4a",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
    ".flac": "audio/flac",
}
_PDF_EXTENSIONS = {".pdf"}
_WORD_EXTENSIONS = {".docx", ".doc"}
_TEXT_EXTENSIONS = {".txt"}

FRAME_TIMESTAMP = "00:00:01"
FRAME_SIZE = "640x480"


class MediaExtractionError(Exception):
    pass


class UnsupportedFileTypeError(MediaExtractionError):
    def __init__(self, extension: str) -> None:
        super().__init__(f"Unsupported document type: {extension or '(none)'}")
        self.extension = extension


class UnreadableDocumentError(MediaExtractionError):
    pass


@dataclass
class DocumentText:
    text: str
    kind: str
    page_count: int | None = None
    diagnostics: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ImagePayload:
    base64_data: str
    mime_type: str


@dataclass(frozen=True)
class AudioPayload:
    data: bytes
    file_name: str
    mime_type: str


def _document_kind(path: Path, mime_type: str | None) -> str | None:
    ext = path.suffix.lower()
    if ext in _PDF_EXTENSIONS:
        return "pdf"
    if ext in _WORD_EXTENSIONS:
        return "word"
    if ext in _TEXT_EXTENSIONS:
        return "text"
    mime = (mime_type or "").lower()
    if mime == "application/pdf":
        return "pdf"
    if "word" in mime or "officedocument" in mime:
        return "word"
    if mime == "text/plain":
        return "text"
    return None


class MediaExtractor:
    """Turns stored uploads into text, base64 images, audio bytes or video artifacts."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg") -> None:
        self._ffmpeg = ffmpeg_binary

    def extract_document(self, file_path: str, mime_type: str | None = None) -> DocumentText:
        path = Path(file_path)
        kind = _document_kind(path, mime_type)
        if kind is None:
            raise UnsupportedFileTypeError(path.suffix.lower())
        if kind == "pdf":
            return self._extract_pdf(path)
        if kind == "word":
            return self._extract_word(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise UnreadableDocumentError(f"Failed to read text file: {exc}") from exc
        logger.info("extracted %d characters from text file", len(text))
        return DocumentText(text=text, kind="text")

    def _extract_pdf(self, path: Path) -> DocumentText:
        try:
            from pypdf import PdfReader

            with path.open("rb") as stream:
                reader = PdfReader(stream)
                pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:
            raise UnreadableDocumentError(f"Failed to process PDF file: {exc}") from exc
        text = "\n".join(pages)
        logger.info("extracted %d characters from PDF (%d pages)", len(text), len(pages))
        return DocumentText(text=text, kind="pdf", page_count=len(pages))

    def _extract_word(self, path: Path) -> DocumentText:
        try:
            import mammoth

            with path.open("rb") as stream:
                result = mammoth.extract_raw_text(stream)
        except Exception as exc:
            raise UnreadableDocumentError(f"Failed to process Word document: {exc}") from exc
        diagnostics = [str(getattr(message, "message", message)) for message in (result.messages or [])]
        if diagnostics:
            logger.warning("word extraction produced %d diagnostics", len(diagnostics))
        text = result.value or ""
        logger.info("extracted %d characters from Word document", len(text))
        return DocumentText(text=text, kind="word", diagnostics=diagnostics)

    def load_image(self, file_path: str) -> ImagePayload:
        path = Path(file_path)
        raw = path.read_bytes()
        mime_type = IMAGE_MIME_TYPES.get(path.suffix.lower(), "image/jpeg")
        return ImagePayload(base64_data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)

    def load_audio(self, file_path: str) -> AudioPayload:
        path = Path(file_path)
        return AudioPayload(
            data=path.read_bytes(),
            file_name=path.name,
            mime_type=AUDIO_MIME_TYPES.get(path.suffix.lower(), "application/octet-stream"),
        )

    def _artifact_path(self, video_path: Path, suffix: str) -> Path:
        return video_path.with_name(f"{video_path.stem}_{uuid.uuid4().hex[:8]}{suffix}")

    def _run_ffmpeg(self, args: list[str]) -> None:
        try:
            subprocess.run(
                [self._ffmpeg, "-y", "-loglevel", "error", *args],
                check=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise MediaExtractionError(f"ffmpeg binary not found: {self._ffmpeg}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or b"").decode("utf-8", errors="ignore").strip()
            raise MediaExtractionError(f"ffmpeg failed: {detail or exc.returncode}") from exc

    def extract_video_frame(self, video_path: str) -> str:
        """Capture one JPEG frame at one second; the caller must discard() it."""
        source = Path(video_path)
        frame_path = self._artifact_path(source, "_thumb.jpg")
        try:
            self._run_ffmpeg(
                ["-ss", FRAME_TIMESTAMP, "-i", str(source), "-frames:v", "1", "-s", FRAME_SIZE, str(frame_path)]
            )
        except MediaExtractionError:
            self.discard(str(frame_path))
            raise
        if not frame_path.exists():
            raise MediaExtractionError("ffmpeg produced no frame.")
        return str(frame_path)

    def extract_video_audio(self, video_path: str) -> str:
        """Re-encode the audio track as MP3; the caller must discard() it."""
        source = Path(video_path)
        audio_path = self._artifact_path(source, "_audio.mp3")
        try:
            self._run_ffmpeg(["-i", str(source), "-vn", "-acodec", "libmp3lame", str(audio_path)])
        except MediaExtractionError:
            self.discard(str(audio_path))
            raise
        if not audio_path.exists():
            raise MediaExtractionError("ffmpeg produced no audio track.")
        return str(audio_path)

    def discard(self, file_path: str | None) -> None:
        if not file_path:
            return
        Path(file_path).unlink(missing_ok=True)
