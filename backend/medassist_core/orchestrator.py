from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

from observability import get_logger

from .explainer import EXPLANATION_PLACEHOLDER, ExplanationGenerator
from .models import ChatTurn, HistoryEntry, InferenceResult, Modality, Outcome
from .registry import ModalityRegistry

if TYPE_CHECKING:
    from medassist_tools.inference import InferenceClient
    from medassist_tools.media_extractor import MediaExtractor

logger = get_logger(__name__)

CONTEXT_WINDOW = 3
DOCUMENT_PROMPT_CHARS = 4000
DEFAULT_PROMPT = "Please provide some information."
VIDEO_FRAME_NOTE = "This is a frame from a video"

TEXT_FALLBACK = (
    "I apologize, but I'm having trouble connecting to my AI service right now. Please try again in a moment. "
    "If this persists, please contact support."
)
IMAGE_FALLBACK = (
    "I can see you've shared an image. While I'm experiencing technical difficulties with detailed image "
    "analysis, please describe what you're seeing or any concerns you have, and I'll provide medical guidance."
)
AUDIO_FALLBACK = (
    "I've received your audio message but I'm having trouble processing it right now. Please try typing your "
    "message, or try again in a moment."
)
VIDEO_FALLBACK = (
    "I've received your video. Please describe what you'd like me to know about it, and I'll provide medical "
    "guidance."
)
DOCUMENT_FALLBACK = (
    "I've received your document but I'm having trouble reading it. Please try uploading it again or describe "
    "its contents, and I'll help you analyze it."
)
DOCUMENT_ACK = "I've received your document. Please let me know what you'd like to discuss about it."
GENERIC_FALLBACK = "I apologize, but I'm experiencing technical difficulties. Please try again shortly."

PROVIDER_TEXT = "chat"
PROVIDER_VISION = "vision"
PROVIDER_SPEECH = "speech"
PROVIDER_VIDEO = "vision+speech"
PROVIDER_DOCUMENT = "document-analysis"
PROVIDER_BASIC = "basic"
PROVIDER_FALLBACK = "fallback"
PROVIDER_ERROR = "error"


def build_context(history: list[HistoryEntry]) -> str:
    recent = history[-CONTEXT_WINDOW:]
    return "\n".join(f"{entry.role_label}: {entry.content}" for entry in recent)


def image_prompt(user_message: str) -> str:
    if user_message:
        return (
            f'The user shared an image and says: "{user_message}". Please analyze this medical image and provide '
            "relevant medical insights, observations, and recommendations. Be specific about what you see."
        )
    return (
        "Please analyze this medical image in detail. Describe what you observe, any visible symptoms, "
        "conditions, or concerns. Provide medical insights and recommendations. Be professional and thorough."
    )


def audio_prompt(transcript: str, user_message: str) -> str:
    if user_message:
        return f'User\'s audio message (transcribed): "{transcript}". Additional context: {user_message}'
    return f'User\'s audio message (transcribed): "{transcript}"'


def document_prompt(excerpt: str, user_message: str) -> str:
    if user_message.strip():
        return (
            f'The user uploaded a medical document and asks: "{user_message}"\n\n'
            f"Document content:\n{excerpt}\n\n"
            "Please analyze the document and answer their question. Provide relevant medical insights and "
            "recommendations."
        )
    return (
        "Please analyze this medical document and provide a comprehensive summary, highlighting key medical "
        "information, diagnoses, treatments, test results, medications, and any important observations or "
        f"recommendations.\n\nDocument content:\n{excerpt}"
    )


class ConversationOrchestrator:
    """Routes one chat turn to the extractor and inference calls for its modality.

    `handle_turn` never raises: every downstream failure becomes an apology
    result with ``success=False``. Successful AI answers carry an explanation,
    or EXPLANATION_PLACEHOLDER when the explanation call fails.
    """

    def __init__(
        self,
        *,
        inference: InferenceClient,
        extractor: MediaExtractor,
        explainer: ExplanationGenerator,
    ) -> None:
        self._inference = inference
        self._extractor = extractor
        self._explainer = explainer
        self._registry = ModalityRegistry(default=self._handle_unknown)
        self._registry.register(Modality.TEXT, self._handle_text)
        self._registry.register(Modality.IMAGE, self._handle_image)
        self._registry.register(Modality.AUDIO, self._handle_audio)
        self._registry.register(Modality.VIDEO, self._handle_video)
        self._registry.register(Modality.DOCUMENT, self._handle_document)
        self._registry.ensure_complete()

    @property
    def registry(self) -> ModalityRegistry:
        return self._registry

    def handle_turn(self, turn: ChatTurn) -> InferenceResult:
        context = build_context(turn.history)
        modality = Modality.parse(turn.modality)
        logger.info("handling %s turn", modality.value if modality else f"unrecognized:{turn.modality}")
        handler = self._registry.resolve(modality)
        try:
            return handler(turn, context)
        except Exception as exc:
            logger.exception("turn processing failed")
            return self._failure(GENERIC_FALLBACK, exc, provider_tag=PROVIDER_ERROR)

    # shared steps

    def _failure(self, message: str, error: Exception | str, *, provider_tag: str = PROVIDER_FALLBACK) -> InferenceResult:
        detail = str(error)
        logger.warning("returning fallback reply (%s): %s", provider_tag, detail)
        return InferenceResult(content=message, success=False, provider_tag=provider_tag, error_detail=detail)

    def _explain(self, question: str, answer: str, context: str = "") -> str:
        outcome: Outcome[str] = self._explainer.explain(question, answer, context)
        return outcome.unwrap_or(EXPLANATION_PLACEHOLDER)

    def _answer(self, prompt: str, context: str) -> InferenceResult:
        try:
            content = self._inference.chat_reply(prompt, context)
        except Exception as exc:
            return self._failure(TEXT_FALLBACK, exc, provider_tag=PROVIDER_ERROR)
        return InferenceResult(
            content=content,
            explanation=self._explain(prompt, content, context),
            provider_tag=PROVIDER_TEXT,
        )

    def _describe_image(self, file_path: str, user_message: str) -> str:
        image = self._extractor.load_image(file_path)
        return self._inference.complete_vision(image_prompt(user_message), image.base64_data, image.mime_type)

    def _transcribe_file(self, file_path: str) -> str:
        audio = self._extractor.load_audio(file_path)
        return self._inference.transcribe(audio.data, file_name=audio.file_name, mime_type=audio.mime_type)

    def _video_transcript(self, video_path: str) -> Outcome[str]:
        audio_path: str | None = None
        try:
            audio_path = self._extractor.extract_video_audio(video_path)
            return Outcome.success(self._transcribe_file(audio_path))
        except Exception as exc:
            logger.info("no audio track or audio extraction failed: %s", exc)
            return Outcome.failure(exc)
        finally:
            self._extractor.discard(audio_path)

    # modality handlers

    def _handle_text(self, turn: ChatTurn, context: str) -> InferenceResult:
        return self._answer(turn.text, context)

    def _handle_unknown(self, turn: ChatTurn, context: str) -> InferenceResult:
        return self._answer(turn.text or DEFAULT_PROMPT, context)

    def _handle_image(self, turn: ChatTurn, context: str) -> InferenceResult:
        if not turn.file_path:
            return self._failure(IMAGE_FALLBACK, "No image file available for analysis.")
        try:
            content = self._describe_image(turn.file_path, turn.text)
        except Exception as exc:
            return self._failure(IMAGE_FALLBACK, exc)
        return InferenceResult(
            content=content,
            explanation=self._explain(turn.text or "Image analysis request", content, "Visual medical image analysis"),
            provider_tag=PROVIDER_VISION,
        )

    def _handle_audio(self, turn: ChatTurn, context: str) -> InferenceResult:
        if not turn.file_path:
            return self._failure(AUDIO_FALLBACK, "No audio file available for transcription.")
        try:
            transcript = self._transcribe_file(turn.file_path)
            prompt = audio_prompt(transcript, turn.text)
            response = self._inference.chat_reply(prompt)
        except Exception as exc:
            return self._failure(AUDIO_FALLBACK, exc)
        return InferenceResult(
            content=f"**Transcription:** {transcript}\n\n**Response:** {response}",
            explanation=self._explain(prompt, response),
            provider_tag=PROVIDER_SPEECH,
            transcription=transcript,
        )

    def _handle_video(self, turn: ChatTurn, context: str) -> InferenceResult:
        if not turn.file_path:
            return self._failure(VIDEO_FALLBACK, "No video file available for analysis.")
        frame_path: str | None = None
        transcript = ""
        try:
            frame_path = self._extractor.extract_video_frame(turn.file_path)
            with ThreadPoolExecutor(max_workers=2) as pool:
                visual_future = pool.submit(self._describe_image, frame_path, VIDEO_FRAME_NOTE)
                audio_future = pool.submit(self._video_transcript, turn.file_path)
                visual = visual_future.result()
                transcript = audio_future.result().unwrap_or("")

            parts = ["**Video Analysis:**\n\n", f"**Visual Content:** {visual}\n\n"]
            if transcript:
                parts.append(f"**Audio Transcription:** {transcript}\n\n")
            if turn.text.strip():
                follow_up = self._inference.chat_reply(f"Regarding this video: {turn.text}. Video context: {visual}")
                parts.append(f"**Response:** {follow_up}")
            content = "".join(parts)
        except Exception as exc:
            return self._failure(VIDEO_FALLBACK, exc)
        finally:
            self._extractor.discard(frame_path)
        return InferenceResult(
            content=content,
            explanation=self._explain(turn.text or "Video analysis request", content, "Video frame and audio analysis"),
            provider_tag=PROVIDER_VIDEO,
            transcription=transcript or None,
        )

    def _handle_document(self, turn: ChatTurn, context: str) -> InferenceResult:
        if turn.file_path and Path(turn.file_path).exists():
            try:
                document = self._extractor.extract_document(turn.file_path, turn.file_type)
            except Exception as exc:
                return self._failure(DOCUMENT_FALLBACK, exc)
            metadata = {"page_count": str(document.page_count)} if document.page_count is not None else {}
            prompt = document_prompt(document.text[:DOCUMENT_PROMPT_CHARS], turn.text)
            try:
                response = self._inference.chat_reply(prompt)
            except Exception as exc:
                # extracted text outlives a failed summary
                failed = self._failure(DOCUMENT_FALLBACK, exc)
                failed.extracted_text = document.text
                failed.metadata = metadata
                return failed
            return InferenceResult(
                content=(
                    f"**Document Analysis:**\n\n{response}\n\n---\n"
                    f"*Document length: {len(document.text)} characters*"
                ),
                explanation=self._explain(prompt, response),
                provider_tag=PROVIDER_DOCUMENT,
                extracted_text=document.text,
                metadata=metadata,
            )
        if turn.text.strip():
            return self._answer(f"Regarding the document: {turn.text}", context)
        return InferenceResult(content=DOCUMENT_ACK, provider_tag=PROVIDER_BASIC)
