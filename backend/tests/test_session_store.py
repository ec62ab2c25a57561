from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from memory import (
    DuplicateUserError,
    MemoryPolicyError,
    MemoryService,
    SessionLocks,
    SQLiteMemoryDB,
    category_for_mime,
)


@pytest.fixture
def memory(tmp_path) -> MemoryService:
    return MemoryService(SQLiteMemoryDB(str(tmp_path / "store.sqlite")))


def test_concurrent_first_messages_create_one_session(memory):
    def first_touch(_: int) -> str:
        return memory.sessions.find_or_create(session_id="shared-session", patient_id="patient-a")["id"]

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = set(pool.map(first_touch, range(16)))

    assert len(ids) == 1
    with memory.db.connection() as conn:
        count = conn.execute("SELECT COUNT(*) AS c FROM chat_sessions WHERE session_id = 'shared-session'").fetchone()
    assert count["c"] == 1


def test_session_belongs_to_one_patient(memory):
    memory.sessions.find_or_create(session_id="owned", patient_id="patient-a")

    with pytest.raises(MemoryPolicyError):
        memory.sessions.find_or_create(session_id="owned", patient_id="patient-b")
    assert memory.sessions.get_session("owned", patient_id="patient-b") is None


def test_messages_append_in_order(memory):
    memory.sessions.create_session(session_id="s1", patient_id="patient-a")
    memory.sessions.append_message(session_id="s1", sender="patient", content="first")
    memory.sessions.append_message(session_id="s1", sender="ai", content="second", explanation="why")
    memory.sessions.append_message(session_id="s1", sender="patient", content="third", message_type="image")

    session = memory.sessions.get_session("s1", patient_id="patient-a")

    assert [m["content"] for m in session["messages"]] == ["first", "second", "third"]
    assert session["messages"][1]["explanation"] == "why"
    assert [m["content"] for m in memory.sessions.recent_messages("s1", limit=2)] == ["second", "third"]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"sender": "patient", "content": "hi", "explanation": "not allowed"},
        {"sender": "ai", "content": "hi", "message_type": "image"},
        {"sender": "nurse", "content": "hi"},
        {"sender": "patient", "content": "hi", "message_type": "fax"},
        {"sender": "patient", "content": ""},
    ],
)
def test_append_rejects_invalid_messages(memory, kwargs):
    memory.sessions.create_session(session_id="s1", patient_id="patient-a")
    with pytest.raises(ValueError):
        memory.sessions.append_message(session_id="s1", **kwargs)


def test_append_requires_existing_session(memory):
    with pytest.raises(ValueError, match="not found"):
        memory.sessions.append_message(session_id="missing", sender="patient", content="hi")


def test_list_sessions_reports_count_and_last_message(memory):
    memory.sessions.create_session(session_id="s1", patient_id="patient-a")
    memory.sessions.append_message(session_id="s1", sender="patient", content="hello")
    memory.sessions.append_message(session_id="s1", sender="ai", content="hi there")

    [listed] = memory.sessions.list_sessions("patient-a")

    assert listed["message_count"] == 2
    assert listed["last_message"]["content"] == "hi there"
    assert memory.sessions.list_sessions("patient-b") == []


def test_deleting_session_keeps_its_uploads(memory):
    memory.sessions.create_session(session_id="s1", patient_id="patient-a")
    memory.sessions.append_message(session_id="s1", sender="patient", content="see attached")
    upload = memory.uploads.create_upload(
        patient_id="patient-a",
        session_id="s1",
        file_name="abc.pdf",
        original_name="labs.pdf",
        file_type="application/pdf",
        file_size=10,
        file_path="/tmp/abc.pdf",
        file_url="/uploads/abc.pdf",
        category="document",
    )

    assert memory.sessions.delete_session("s1", patient_id="patient-b") is False
    assert memory.sessions.delete_session("s1", patient_id="patient-a") is True

    assert memory.sessions.get_session("s1") is None
    assert memory.sessions.delete_session("s1", patient_id="patient-a") is False
    assert memory.uploads.get_upload(upload["id"])["session_id"] == "s1"
    with memory.db.connection() as conn:
        orphaned = conn.execute("SELECT COUNT(*) AS c FROM chat_messages WHERE session_id = 's1'").fetchone()
    assert orphaned["c"] == 0


def test_upload_category_is_fixed_at_creation(memory):
    upload = memory.uploads.create_upload(
        patient_id="patient-a",
        session_id="s1",
        file_name="x.jpg",
        original_name="x.jpg",
        file_type="image/jpeg",
        file_size=3,
        file_path="/tmp/x.jpg",
        file_url="/uploads/x.jpg",
        category="image",
    )

    updated = memory.uploads.store_analysis(upload["id"], extracted_text=None, ai_analysis="could not analyze")

    assert updated["category"] == "image"
    assert updated["extracted_text"] is None
    assert updated["ai_analysis"] == "could not analyze"


@pytest.mark.parametrize(
    ("mime", "category"),
    [
        ("image/png", "image"),
        ("audio/webm", "audio"),
        ("video/mp4", "video"),
        ("application/pdf", "document"),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", "document"),
        ("application/msword", "document"),
        ("text/plain", "document"),
        ("application/zip", "other"),
    ],
)
def test_category_for_mime(mime, category):
    assert category_for_mime(mime) == category


def test_patient_ids_are_sequential_and_doctors_have_none(memory):
    first = memory.users.create_user(email="A@Example.com", password_hash="x", name="Ann Lee", role="patient")
    doctor = memory.users.create_user(
        email="doc@example.com",
        password_hash="x",
        name="Dr. Kim",
        role="doctor",
        specialization="Dermatology",
        license_number="LIC-1",
    )
    second = memory.users.create_user(email="b@example.com", password_hash="x", name="Bo Chen", role="patient")

    assert first["patient_id"] == "PT000001"
    assert second["patient_id"] == "PT000002"
    assert doctor["patient_id"] is None
    assert first["email"] == "a@example.com"
    assert [p["patient_id"] for p in memory.users.search_patients("chen")] == ["PT000002"]
    assert [p["patient_id"] for p in memory.users.search_patients("pt00000")] == ["PT000001", "PT000002"]


def test_session_locks_serialize_and_release_entries():
    locks = SessionLocks()
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def first() -> None:
        with locks.hold("busy"):
            order.append("first-in")
            entered.set()
            release.wait(timeout=5)
            order.append("first-out")

    def second() -> None:
        with locks.hold("busy"):
            order.append("second-in")

    with ThreadPoolExecutor(max_workers=2) as pool:
        pool.submit(first)
        assert entered.wait(timeout=5)
        waiting = pool.submit(second)
        assert not waiting.done()
        assert len(locks) == 1
        release.set()
        waiting.result(timeout=5)

    assert order == ["first-in", "first-out", "second-in"]
    assert len(locks) == 0


def test_session_lock_entry_is_dropped_when_body_raises():
    locks = SessionLocks()

    with pytest.raises(MemoryPolicyError):
        with locks.hold("rejected"):
            raise MemoryPolicyError("not yours")

    assert len(locks) == 0


def test_duplicate_email_or_license_raises_duplicate_user_error(memory):
    memory.users.create_user(email="a@example.com", password_hash="h", name="A", role="patient")
    memory.users.create_user(
        email="doc@example.com", password_hash="h", name="Doc", role="doctor", specialization="GP", license_number="L1"
    )

    with pytest.raises(DuplicateUserError) as email_clash:
        memory.users.create_user(email="A@example.com", password_hash="h", name="Again", role="patient")
    with pytest.raises(DuplicateUserError) as license_clash:
        memory.users.create_user(
            email="doc2@example.com", password_hash="h", name="Doc2", role="doctor", specialization="GP", license_number="L1"
        )

    assert email_clash.value.field == "email"
    assert license_clash.value.field == "license_number"
    assert memory.users.get_by_email("doc2@example.com") is None
