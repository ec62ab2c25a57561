from __future__ import annotations


def _seed_patient_activity(client, patient, session_id="doc-review-session"):
    client.post(
        "/api/chat/message",
        headers=patient["headers"],
        json={"sessionId": session_id, "message": "My ankle is swollen"},
    )
    client.post(
        "/api/upload",
        headers=patient["headers"],
        data={"sessionId": session_id},
        files=[("files", ("xray-notes.txt", b"No fracture seen.", "text/plain"))],
    )
    return session_id


def test_search_and_view_patient(client, register_user, fake_provider):
    doctor = register_user("doctor")
    patient = register_user("patient", name="Maria Gomez", email="maria@example.com")
    register_user("patient", name="John Park")

    results = client.get("/api/doctor/search-patients", params={"query": "gomez"}, headers=doctor["headers"])
    assert results.status_code == 200
    [match] = results.json()["patients"]
    assert match["patientId"] == patient["user"]["patientId"]
    assert "password" not in str(match).lower()

    detail = client.get(f"/api/doctor/patient/{match['patientId']}", headers=doctor["headers"]).json()["patient"]
    assert detail["name"] == "Maria Gomez"
    assert detail["email"] == "maria@example.com"
    assert detail["medicalHistory"] == []


def test_patient_chats_and_uploads(client, register_user, fake_provider):
    doctor = register_user("doctor")
    patient = register_user("patient")
    session_id = _seed_patient_activity(client, patient)
    patient_id = patient["user"]["patientId"]

    chats = client.get(f"/api/doctor/patient/{patient_id}/chats", headers=doctor["headers"]).json()
    assert chats["patientInfo"]["patientId"] == patient_id
    [chat] = chats["chats"]
    assert chat["sessionId"] == session_id
    assert chat["messageCount"] == 2
    assert [m["sender"] for m in chat["messages"]] == ["patient", "ai"]

    uploads = client.get(f"/api/doctor/patient/{patient_id}/uploads", headers=doctor["headers"]).json()
    [upload] = uploads["uploads"]
    assert upload["sessionId"] == session_id
    assert upload["extractedText"] == "No fracture seen."


def test_doctor_chat_prefixes_patient_and_uses_session_history(client, register_user, fake_provider):
    doctor = register_user("doctor")
    patient = register_user("patient", name="Lena Ortiz")
    session_id = _seed_patient_activity(client, patient)
    patient_id = patient["user"]["patientId"]
    fake_provider["chat"].clear()

    response = client.post(
        f"/api/doctor/patient/{patient_id}/chat",
        headers=doctor["headers"],
        json={"message": "Summarize the complaint", "sessionId": session_id},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["response"] == "Rest and drink water."
    assert payload["patientId"] == patient_id
    answer = [m for m in fake_provider["chat"] if "explainability" not in m[0]["content"]][0]
    assert answer[-1]["content"] == (
        f"Doctor inquiry about patient Lena Ortiz ({patient_id}): Summarize the complaint"
    )
    assert answer[1]["content"] == "User: My ankle is swollen\nAssistant: Rest and drink water."


def test_doctor_routes_validate_input_and_role(client, register_user):
    doctor = register_user("doctor")
    patient = register_user("patient")

    assert client.get("/api/doctor/search-patients", headers=doctor["headers"]).status_code == 400
    assert client.get("/api/doctor/patient/PT999999", headers=doctor["headers"]).status_code == 404
    assert (
        client.post("/api/doctor/patient/PT999999/chat", headers=doctor["headers"], json={"message": "hi"}).status_code
        == 404
    )
    assert (
        client.post(
            f"/api/doctor/patient/{patient['user']['patientId']}/chat",
            headers=doctor["headers"],
            json={},
        ).status_code
        == 400
    )
    assert (
        client.get("/api/doctor/search-patients", params={"query": "a"}, headers=patient["headers"]).status_code
        == 403
    )
