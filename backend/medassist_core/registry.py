from __future__ import annotations

from typing import Callable

from .models import ChatTurn, InferenceResult, Modality

TurnHandler = Callable[[ChatTurn, str], InferenceResult]


class ModalityRegistry:
    """Maps every Modality to a handler, plus one default for unknown inputs."""

    def __init__(self, default: TurnHandler) -> None:
        self._handlers: dict[Modality, TurnHandler] = {}
        self._default = default

    def register(self, modality: Modality, handler: TurnHandler) -> None:
        self._handlers[modality] = handler

    def ensure_complete(self) -> None:
        missing = [member.value for member in Modality if member not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for modalities: {', '.join(missing)}")

    def resolve(self, modality: Modality | None) -> TurnHandler:
        if modality is None:
            return self._default
        return self._handlers[modality]

    def list_modalities(self) -> list[str]:
        return sorted(member.value for member in self._handlers)
