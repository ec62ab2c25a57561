from __future__ import annotations

from pathlib import Path


def _upload(client, headers, files, session_id="upload-session"):
    return client.post(
        "/api/upload",
        headers=headers,
        data={"sessionId": session_id},
        files=[("files", item) for item in files],
    )


def test_document_upload_keeps_full_extracted_text(client, register_user, fake_provider):
    patient = register_user("patient")
    text = "Hemoglobin 13.2 g/dL. " * 400
    assert len(text) > 4000

    response = _upload(client, patient["headers"], [("labs.txt", text.encode("utf-8"), "text/plain")])

    assert response.status_code == 200
    [record] = response.json()["files"]
    assert record["category"] == "document"
    assert record["fileName"] == "labs.txt"
    assert record["extractedText"] == text
    assert record["aiAnalysis"].startswith("**Document Analysis:**\n\nRest and drink water.")
    assert record["aiAnalysis"].endswith(f"*Document length: {len(text)} characters*")

    prompt = [m for m in fake_provider["chat"] if "explainability" not in m[0]["content"]][0][-1]["content"]
    assert text[:4000] in prompt
    assert text[:4001] not in prompt


def test_image_upload_stores_vision_analysis(client, register_user, fake_provider):
    patient = register_user("patient")

    response = _upload(client, patient["headers"], [("rash.jpg", b"\xff\xd8\xff\xe0jpeg", "image/jpeg")])

    [record] = response.json()["files"]
    assert record["category"] == "image"
    assert record["extractedText"] == "A small red rash on the forearm."
    assert record["aiAnalysis"] == "A small red rash on the forearm."
    assert fake_provider["vision"][0].startswith("Please analyze this medical image in detail.")


def test_audio_upload_stores_transcript(client, register_user, fake_provider):
    patient = register_user("patient")

    response = _upload(client, patient["headers"], [("note.mp3", b"ID3audio", "audio/mpeg")])

    [record] = response.json()["files"]
    assert record["category"] == "audio"
    assert record["extractedText"] == "my throat hurts"
    assert record["aiAnalysis"].startswith("**Transcription:** my throat hurts")


def test_failed_analysis_keeps_category_and_reports_message(client, register_user, backend_module, monkeypatch):
    from medassist_tools.inference import InferenceError

    def unavailable(*args, **kwargs):
        raise InferenceError("provider down", status_code=502)

    monkeypatch.setattr(backend_module.container.inference, "complete_vision", unavailable)
    patient = register_user("patient")

    response = _upload(client, patient["headers"], [("rash.png", b"\x89PNG", "image/png")])

    [record] = response.json()["files"]
    assert record["category"] == "image"
    assert record["extractedText"] is None
    assert record["aiAnalysis"] == "File uploaded successfully but could not be analyzed automatically."


def test_other_files_are_stored_without_analysis(client, register_user, fake_provider):
    patient = register_user("patient")

    response = _upload(client, patient["headers"], [("archive.zip", b"PK\x03\x04", "application/zip")])

    [record] = response.json()["files"]
    assert record["category"] == "other"
    assert record["extractedText"] is None
    assert record["aiAnalysis"] is None
    assert fake_provider["chat"] == []


def test_uploaded_file_is_served_and_usable_in_chat(client, register_user, fake_provider):
    patient = register_user("patient")
    [record] = _upload(client, patient["headers"], [("mole.png", b"\x89PNGmole", "image/png")]).json()["files"]

    served = client.get(record["fileUrl"])
    assert served.status_code == 200
    assert served.content == b"\x89PNGmole"

    response = client.post(
        "/api/chat/message",
        headers=patient["headers"],
        json={
            "sessionId": "upload-session",
            "message": "has this changed?",
            "messageType": "image",
            "fileUrl": record["fileUrl"],
            "fileName": "mole.png",
            "fileType": "image/png",
        },
    )

    assert response.json()["aiResponse"] == "A small red rash on the forearm."
    assert '"has this changed?"' in fake_provider["vision"][-1]


def test_upload_validation(client, register_user, fake_provider):
    patient = register_user("patient")
    six = [(f"f{i}.txt", b"x", "text/plain") for i in range(6)]

    assert _upload(client, patient["headers"], six).status_code == 400
    assert _upload(client, patient["headers"], [("a.txt", b"x", "text/plain")], session_id="").status_code == 400
    assert _upload(client, patient["headers"], [("empty.txt", b"", "text/plain")]).status_code == 400
    assert client.post("/api/upload", headers=patient["headers"], data={"sessionId": "s"}).status_code == 400


def test_list_and_delete_uploads(client, register_user, fake_provider, backend_module):
    patient = register_user("patient")
    other = register_user("patient")
    [record] = _upload(client, patient["headers"], [("a.txt", b"notes", "text/plain")]).json()["files"]
    stored_path = Path(backend_module.container.upload_dir) / record["fileUrl"].rsplit("/", 1)[-1]
    assert stored_path.exists()

    listed = client.get("/api/upload/session/upload-session", headers=patient["headers"]).json()["uploads"]
    assert [u["id"] for u in listed] == [record["id"]]
    assert client.get("/api/upload/session/upload-session", headers=other["headers"]).json()["uploads"] == []

    assert client.delete(f"/api/upload/{record['id']}", headers=other["headers"]).status_code == 404
    assert client.delete(f"/api/upload/{record['id']}", headers=patient["headers"]).status_code == 200
    assert not stored_path.exists()
    assert client.delete(f"/api/upload/{record['id']}", headers=patient["headers"]).status_code == 404


def test_document_text_survives_failed_summary(client, register_user, fake_provider, backend_module, monkeypatch):
    from medassist_tools.inference import InferenceError

    def rate_limited(*args, **kwargs):
        raise InferenceError("rate limited", status_code=429)

    monkeypatch.setattr(backend_module.container.inference, "complete_chat", rate_limited)
    patient = register_user("patient")
    text = "Cholesterol 212 mg/dL. LDL 140 mg/dL.\n" * 200

    response = _upload(client, patient["headers"], [("notes.txt", text.encode("utf-8"), "text/plain")])

    assert response.status_code == 200
    [record] = response.json()["files"]
    assert record["category"] == "document"
    assert record["extractedText"] == text
    assert record["aiAnalysis"] == "File uploaded successfully but could not be analyzed automatically."


def test_oversize_file_rejects_whole_batch(client, register_user, fake_provider, backend_module, monkeypatch):
    from dataclasses import replace

    container = backend_module.container
    monkeypatch.setattr(container, "settings", replace(container.settings, max_upload_bytes=100))
    patient = register_user("patient")

    response = _upload(
        client,
        patient["headers"],
        [("a.txt", b"small", "text/plain"), ("b.txt", b"x" * 500, "text/plain")],
    )

    assert response.status_code == 413
    assert client.get("/api/upload/session/upload-session", headers=patient["headers"]).json()["uploads"] == []
    assert list(Path(container.upload_dir).iterdir()) == []
    assert fake_provider["chat"] == []
