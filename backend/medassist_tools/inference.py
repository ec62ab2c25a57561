from __future__ import annotations

import json
from typing import Any

import httpx

from medassist_core.config import InferenceConfig
from observability import get_logger

logger = get_logger(__name__)

SYSTEM_PERSONA = (
    "You are a helpful, empathetic medical assistant. Provide accurate medical information and advice "
    "in a caring, professional manner. Keep responses concise, practical, and easy to understand. "
    "Always remind users to consult healthcare professionals for serious concerns or emergencies. "
    "Be warm and supportive."
)

ANSWER_TEMPERATURE = 0.7
ANSWER_MAX_TOKENS = 1024
ANSWER_TOP_P = 1.0
TRANSCRIPTION_LANGUAGE = "en"


class InferenceError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except Exception:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


class InferenceClient:
    """OpenAI-compatible chat, vision and speech-to-text calls with fixed model bindings."""

    def __init__(self, config: InferenceConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    @property
    def config(self) -> InferenceConfig:
        return self._config

    def _headers(self) -> dict[str, str]:
        if not self._config.api_key:
            raise InferenceError("Inference API key is not configured.", status_code=503)
        return {"Authorization": f"Bearer {self._config.api_key}"}

    def _client(self) -> httpx.Client:
        timeout = httpx.Timeout(self._config.timeout_seconds, connect=self._config.connect_timeout_seconds)
        return httpx.Client(timeout=timeout, transport=self._transport)

    def _post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._headers()
        url = f"{self._config.base_url}{path}"
        try:
            with self._client() as client:
                response = client.post(url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise InferenceError("Inference provider timed out.", status_code=504) from exc
        except httpx.HTTPError as exc:
            raise InferenceError(f"Failed to reach inference provider: {exc}", status_code=502) from exc

        if response.status_code >= 400:
            raise InferenceError(_provider_error_message(response), status_code=response.status_code)
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise InferenceError("Inference provider returned invalid JSON.", status_code=502) from exc
        if not isinstance(payload, dict):
            raise InferenceError("Inference provider returned an unexpected payload.", status_code=502)
        return payload

    def complete_chat(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float = ANSWER_TEMPERATURE,
        max_tokens: int = ANSWER_MAX_TOKENS,
        top_p: float = ANSWER_TOP_P,
        model: str | None = None,
    ) -> str:
        payload = {
            "model": model or self._config.text_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
        }
        completion = self._post("/chat/completions", json=payload)
        text = _coerce_completion_text(completion).strip()
        if not text:
            raise InferenceError("Inference provider returned an empty completion.", status_code=502)
        return text

    def chat_reply(self, prompt: str, context: str = "") -> str:
        messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PERSONA}]
        if context:
            messages.append({"role": "assistant", "content": context})
        messages.append({"role": "user", "content": prompt})
        logger.info("chat completion requested (%d chars)", len(prompt))
        return self.complete_chat(messages)

    def complete_vision(self, prompt: str, image_base64: str, mime_type: str) -> str:
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}},
                ],
            }
        ]
        logger.info("vision completion requested (%s)", mime_type)
        return self.complete_chat(messages, model=self._config.vision_model)

    def transcribe(
        self,
        audio_bytes: bytes,
        *,
        file_name: str = "audio.mp3",
        mime_type: str = "application/octet-stream",
        language: str = TRANSCRIPTION_LANGUAGE,
    ) -> str:
        data = {
            "model": self._config.whisper_model,
            "response_format": "json",
            "language": language,
        }
        files = {"file": (file_name, audio_bytes, mime_type)}
        logger.info("transcription requested (%d bytes)", len(audio_bytes))
        payload = self._post("/audio/transcriptions", data=data, files=files)
        return str(payload.get("text") or "").strip()
