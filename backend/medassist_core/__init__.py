from .config import AppSettings, InferenceConfig, bootstrap_local_env
from .explainer import EXPLANATION_PLACEHOLDER, ExplanationGenerator
from .models import ChatTurn, HistoryEntry, InferenceResult, Modality, Outcome
from .orchestrator import ConversationOrchestrator
from .registry import ModalityRegistry, TurnHandler

__all__ = [
    "EXPLANATION_PLACEHOLDER",
    "AppSettings",
    "ChatTurn",
    "ConversationOrchestrator",
    "ExplanationGenerator",
    "HistoryEntry",
    "InferenceConfig",
    "InferenceResult",
    "Modality",
    "ModalityRegistry",
    "Outcome",
    "TurnHandler",
    "bootstrap_local_env",
]
