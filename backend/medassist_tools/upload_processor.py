from __future__ import annotations

from dataclasses import dataclass, field

from medassist_core.models import ChatTurn, Modality, Outcome
from medassist_core.orchestrator import ConversationOrchestrator
from observability import get_logger

logger = get_logger(__name__)

ANALYSIS_FAILED_MESSAGE = "File uploaded successfully but could not be analyzed automatically."
AUDIO_PLACEHOLDER_TEXT = "Audio received"
VIDEO_PLACEHOLDER_TEXT = "Video processed"


class UploadAnalysisError(Exception):
    pass


@dataclass
class UploadAnalysis:
    extracted_text: str | None = None
    ai_analysis: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class UploadProcessor:
    """Runs a stored upload through the orchestrator once, right after it is saved."""

    def __init__(self, orchestrator: ConversationOrchestrator) -> None:
        self._orchestrator = orchestrator

    def process(self, file_path: str, mime_type: str, category: str) -> Outcome[UploadAnalysis]:
        modality = Modality.parse(category)
        if modality is None or modality is Modality.TEXT:
            return Outcome.success(UploadAnalysis())

        turn = ChatTurn(text="", modality=modality.value, file_path=file_path, file_type=mime_type)
        result = self._orchestrator.handle_turn(turn)
        if not result.success:
            logger.warning("upload analysis failed for %s (%s): %s", category, mime_type, result.error_detail)
            if result.extracted_text is None:
                return Outcome.failure(UploadAnalysisError(result.error_detail or "analysis failed"))
            return Outcome.success(
                UploadAnalysis(
                    extracted_text=result.extracted_text,
                    ai_analysis=ANALYSIS_FAILED_MESSAGE,
                    metadata=dict(result.metadata),
                )
            )

        if modality is Modality.DOCUMENT:
            analysis = UploadAnalysis(
                extracted_text=result.extracted_text,
                ai_analysis=result.content,
                metadata=dict(result.metadata),
            )
        elif modality is Modality.IMAGE:
            analysis = UploadAnalysis(extracted_text=result.content, ai_analysis=result.content)
        elif modality is Modality.AUDIO:
            analysis = UploadAnalysis(
                extracted_text=result.transcription or AUDIO_PLACEHOLDER_TEXT,
                ai_analysis=result.content,
            )
        else:
            analysis = UploadAnalysis(extracted_text=VIDEO_PLACEHOLDER_TEXT, ai_analysis=result.content)
        return Outcome.success(analysis)
