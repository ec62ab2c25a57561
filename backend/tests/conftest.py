from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    monkeypatch.setenv("MEDASSIST_DB_PATH", str(tmp_path / "medassist-test.sqlite"))
    monkeypatch.setenv("MEDASSIST_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("GROQ_API_KEY", "test-key")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def fake_provider(backend_module, monkeypatch):
    """Replaces every provider call on the app's inference client with recorded fakes."""
    calls: dict[str, list] = {"chat": [], "vision": [], "transcribe": []}
    inference = backend_module.container.inference

    def fake_complete_chat(messages, *, temperature=0.7, max_tokens=1024, top_p=1.0, model=None):
        calls["chat"].append(messages)
        if messages[0]["content"].startswith("You are an AI explainability expert"):
            return "Because the symptoms described match common causes."
        return "Rest and drink water."

    def fake_complete_vision(prompt, image_base64, mime_type):
        calls["vision"].append(prompt)
        return "A small red rash on the forearm."

    def fake_transcribe(audio_bytes, *, file_name="audio.mp3", mime_type="application/octet-stream", language="en"):
        calls["transcribe"].append(file_name)
        return "my throat hurts"

    monkeypatch.setattr(inference, "complete_chat", fake_complete_chat)
    monkeypatch.setattr(inference, "complete_vision", fake_complete_vision)
    monkeypatch.setattr(inference, "transcribe", fake_transcribe)
    return calls


@pytest.fixture
def register_user(client) -> Callable[..., dict]:
    counter = {"value": 0}

    def _register(role: str = "patient", **overrides) -> dict:
        counter["value"] += 1
        payload = {
            "email": f"{role}{counter['value']}@example.com",
            "password": "secret123",
            "name": f"Test {role.title()} {counter['value']}",
            "role": role,
        }
        if role == "doctor":
            payload["specialization"] = "General Practice"
            payload["licenseNumber"] = f"LIC-{counter['value']:04d}"
        payload.update(overrides)
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 201, response.text
        body = response.json()
        return {
            "user": body["user"],
            "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }

    return _register
