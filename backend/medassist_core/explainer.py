from __future__ import annotations

from typing import Any, Protocol

from observability import get_logger

from .models import Outcome

logger = get_logger(__name__)

EXPLANATION_PLACEHOLDER = "Explanation temporarily unavailable."
EXPLANATION_TEMPERATURE = 0.6
EXPLANATION_MAX_TOKENS = 400
EXPLANATION_TOP_P = 0.9

EXPLAINER_SYSTEM_PROMPT = (
    "You are an AI explainability expert. Provide clear, specific explanations of WHY an AI gave a "
    "particular response. Focus on the unique aspects of each interaction. Be concise but insightful."
)


class ChatCompleter(Protocol):
    def complete_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = ...,
        max_tokens: int = ...,
        top_p: float = ...,
        model: str | None = ...,
    ) -> str: ...


def build_explanation_prompt(question: str, answer: str, context: str = "") -> str:
    context_block = f"CONVERSATION CONTEXT: {context}" if context else ""
    return (
        "Analyze this medical AI interaction and provide a clear, specific explanation of WHY this "
        "particular response was generated.\n\n"
        f'USER QUESTION: "{question}"\n\n'
        f'AI RESPONSE: "{answer}"\n\n'
        f"{context_block}\n\n"
        "Provide a dynamic, unique explanation that covers:\n"
        "1. Key medical concepts or symptoms identified in the question\n"
        "2. Why specific advice or information was prioritized in the response\n"
        "3. What factors influenced the tone and depth of the answer\n"
        "4. How context or medical best practices shaped the guidance\n\n"
        "Be specific to THIS interaction - avoid generic templates. Make it educational and insightful."
    )


class ExplanationGenerator:
    """Asks the model to rationalize an answer it already gave.

    Explanations are a side channel: `explain` never raises, it returns an
    Outcome whose error branch the caller maps to EXPLANATION_PLACEHOLDER.
    """

    def __init__(self, completer: ChatCompleter) -> None:
        self._completer = completer

    def explain(self, question: str, answer: str, context: str = "") -> Outcome[str]:
        messages = [
            {"role": "system", "content": EXPLAINER_SYSTEM_PROMPT},
            {"role": "user", "content": build_explanation_prompt(question, answer, context)},
        ]
        try:
            text = self._completer.complete_chat(
                messages,
                temperature=EXPLANATION_TEMPERATURE,
                max_tokens=EXPLANATION_MAX_TOKENS,
                top_p=EXPLANATION_TOP_P,
            )
        except Exception as exc:
            logger.warning("explanation generation failed: %s", exc)
            return Outcome.failure(exc)
        return Outcome.success(text)
