from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, Header, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from accounts import AuthError, TokenService, hash_password, verify_password
from medassist_core import (
    AppSettings,
    ChatTurn,
    ConversationOrchestrator,
    ExplanationGenerator,
    HistoryEntry,
    InferenceConfig,
    Modality,
    bootstrap_local_env,
)
from medassist_tools import ANALYSIS_FAILED_MESSAGE, InferenceClient, MediaExtractor, UploadProcessor
from memory import DuplicateUserError, MemoryPolicyError, MemoryService, SQLiteMemoryDB, category_for_mime
from memory.session_store import MESSAGE_TYPES
from memory.user_store import GENDERS, ROLES
from observability import configure_logging, get_logger

bootstrap_local_env()
configure_logging()
logger = get_logger("medassist.api")

HISTORY_WINDOW = 10


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(CamelModel):
    email: str | None = None
    password: str | None = None
    name: str | None = None
    role: str | None = None
    phone: str | None = None
    specialization: str | None = None
    license_number: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    data_consent: bool = False
    doctor_consent: bool = False


class LoginRequest(CamelModel):
    email: str | None = None
    password: str | None = None


class ChatMessageRequest(CamelModel):
    session_id: str | None = None
    message: str | None = None
    message_type: str = "text"
    file_url: str | None = None
    file_name: str | None = None
    file_type: str | None = None


class DoctorChatRequest(CamelModel):
    message: str | None = None
    session_id: str | None = None


class MedAssistApp:
    def __init__(self) -> None:
        self.settings = AppSettings.from_env()
        self.upload_dir = Path(self.settings.upload_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

        self.db = SQLiteMemoryDB(self.settings.db_path)
        self.memory = MemoryService(self.db)
        self.tokens = TokenService(self.settings.jwt_secret, self.settings.jwt_expire_minutes)

        self.inference = InferenceClient(InferenceConfig.from_env())
        self.extractor = MediaExtractor(self.settings.ffmpeg_binary)
        self.explainer = ExplanationGenerator(self.inference)
        self.orchestrator = ConversationOrchestrator(
            inference=self.inference,
            extractor=self.extractor,
            explainer=self.explainer,
        )
        self.uploads = UploadProcessor(self.orchestrator)

    def local_path_for(self, file_url: str | None, patient_id: str) -> str | None:
        if not file_url:
            return None
        record = self.memory.uploads.find_by_url(file_url, patient_id=patient_id)
        return record["file_path"] if record else None


container = MedAssistApp()
app = FastAPI(title="MedAssist Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(container.settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
app.mount("/uploads", StaticFiles(directory=str(container.upload_dir)), name="uploads")


def current_user(authorization: str | None, *, role: str | None = None) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authorized to access this route")
    raw = authorization.replace("Bearer", "", 1).strip()
    if not raw:
        raise HTTPException(status_code=401, detail="Not authorized to access this route")
    try:
        claims = container.tokens.decode(raw)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    user = container.memory.users.get_by_id(claims.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if role is not None and user["role"] != role:
        raise HTTPException(
            status_code=403,
            detail=f"User role {user['role']} is not authorized to access this route",
        )
    return user


def _checked_session_id(session_id: str) -> str:
    try:
        container.memory.guard.ensure_session_scope(session_id)
    except MemoryPolicyError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session_id


def _user_view(user: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "phone": user["phone"],
        "patientId": user["patient_id"],
        "specialization": user["specialization"],
        "isVerified": user["is_verified"],
        "createdAt": user["created_at"],
    }


def _patient_info(patient: dict[str, Any]) -> dict[str, Any]:
    return {"patientId": patient["patient_id"], "name": patient["name"], "email": patient["email"]}


def _message_view(message: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": message["id"],
        "sender": message["sender"],
        "content": message["content"],
        "explanation": message["explanation"],
        "messageType": message["message_type"],
        "fileUrl": message["file_url"],
        "fileName": message["file_name"],
        "fileType": message["file_type"],
        "timestamp": message["timestamp"],
    }


def _upload_view(upload: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": upload["id"],
        "fileName": upload["original_name"],
        "fileUrl": upload["file_url"],
        "fileType": upload["file_type"],
        "fileSize": upload["file_size"],
        "category": upload["category"],
        "sessionId": upload["session_id"],
        "extractedText": upload["extracted_text"],
        "aiAnalysis": upload["ai_analysis"],
        "metadata": upload["metadata"],
        "createdAt": upload["created_at"],
    }


def _session_view(session: dict[str, Any]) -> dict[str, Any]:
    view = {
        "sessionId": session["session_id"],
        "status": session["status"],
        "summary": session["summary"],
        "tags": session["tags"],
        "createdAt": session["created_at"],
        "updatedAt": session["updated_at"],
    }
    if "message_count" in session:
        view["messageCount"] = session["message_count"]
    if "last_message" in session:
        last = session["last_message"]
        view["lastMessage"] = _message_view(last) if last else None
    if "messages" in session:
        view["messages"] = [_message_view(message) for message in session["messages"]]
    return view


@app.get("/")
def root():
    return {
        "status": "OK",
        "message": "Medical AI Assistant API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth",
            "chat": "/api/chat",
            "doctor": "/api/doctor",
            "upload": "/api/upload",
        },
    }


@app.get("/health")
def health():
    return {
        "status": "OK",
        "message": "Server is running",
        "modalities": container.orchestrator.registry.list_modalities(),
    }


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    if not (payload.email and payload.password and payload.name and payload.role):
        raise HTTPException(status_code=400, detail="Please provide all required fields")
    if payload.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role: {payload.role}")
    if payload.gender is not None and payload.gender not in GENDERS:
        raise HTTPException(status_code=400, detail=f"Invalid gender: {payload.gender}")
    if container.memory.users.get_by_email(payload.email) is not None:
        raise HTTPException(status_code=400, detail="User already exists with this email")
    if payload.role == "doctor":
        if not (payload.specialization and payload.license_number):
            raise HTTPException(
                status_code=400,
                detail="Specialization and license number are required for doctors",
            )
        if container.memory.users.license_in_use(payload.license_number):
            raise HTTPException(status_code=400, detail="License number is already registered")

    try:
        user = container.memory.users.create_user(
            email=payload.email,
            password_hash=hash_password(payload.password),
            name=payload.name,
            role=payload.role,
            phone=payload.phone,
            specialization=payload.specialization,
            license_number=payload.license_number,
            doctor_consent=payload.doctor_consent,
            date_of_birth=payload.date_of_birth,
            gender=payload.gender,
            data_consent=payload.data_consent,
        )
    except DuplicateUserError as exc:
        detail = (
            "License number is already registered"
            if exc.field == "license_number"
            else "User already exists with this email"
        )
        raise HTTPException(status_code=400, detail=detail) from exc
    logger.info("registered %s account %s", user["role"], user["id"])
    return {
        "success": True,
        "message": "Registration successful.",
        "token": container.tokens.issue(user["id"], user["role"]),
        "user": _user_view(user),
    }


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    if not (payload.email and payload.password):
        raise HTTPException(status_code=400, detail="Please provide email and password")
    user = container.memory.users.get_by_email(payload.email)
    if user is None or not verify_password(payload.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {
        "success": True,
        "message": "Login successful",
        "token": container.tokens.issue(user["id"], user["role"]),
        "user": _user_view(user),
    }


@app.get("/api/auth/me")
def me(authorization: str | None = Header(default=None)):
    user = current_user(authorization)
    return {"success": True, "user": _user_view(user)}


@app.post("/api/chat/start")
def chat_start(authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    session = container.memory.sessions.create_session(
        session_id=str(uuid.uuid4()),
        patient_id=user["id"],
        patient_name=user["name"],
        patient_email=user["email"],
    )
    return {"success": True, "sessionId": session["session_id"], "chatId": session["id"]}


@app.post("/api/chat/message")
def chat_message(payload: ChatMessageRequest, authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    if not payload.session_id or not payload.message:
        raise HTTPException(status_code=400, detail="Session ID and message are required")
    session_id = _checked_session_id(payload.session_id)
    sessions = container.memory.sessions
    message_type = payload.message_type if payload.message_type in MESSAGE_TYPES else "text"

    with sessions.locks.hold(session_id):
        try:
            sessions.find_or_create(
                session_id=session_id,
                patient_id=user["id"],
                patient_name=user["name"],
                patient_email=user["email"],
            )
        except MemoryPolicyError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc

        history = [
            HistoryEntry.from_message(message)
            for message in sessions.recent_messages(session_id, limit=HISTORY_WINDOW)
        ]
        sessions.append_message(
            session_id=session_id,
            sender="patient",
            content=payload.message,
            message_type=message_type,
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_type=payload.file_type,
        )
        file_path = None
        if message_type != Modality.TEXT.value:
            file_path = container.local_path_for(payload.file_url, user["id"])

        result = container.orchestrator.handle_turn(
            ChatTurn(
                text=payload.message,
                modality=payload.message_type,
                file_path=file_path,
                file_type=payload.file_type,
                history=history,
            )
        )
        ai_message = sessions.append_message(
            session_id=session_id,
            sender="ai",
            content=result.content,
            explanation=result.explanation,
        )

    return {
        "success": True,
        "message": "Message sent successfully",
        "aiResponse": ai_message["content"],
        "explanation": ai_message["explanation"],
        "messageId": ai_message["id"],
    }


@app.get("/api/chat/history/{session_id}")
def chat_history(session_id: str, authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    session = container.memory.sessions.get_session(_checked_session_id(session_id), patient_id=user["id"])
    if session is None:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return {"success": True, "chat": _session_view(session)}


@app.get("/api/chat/sessions")
def chat_sessions(authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    sessions = container.memory.sessions.list_sessions(user["id"])
    return {"success": True, "sessions": [_session_view(session) for session in sessions]}


@app.delete("/api/chat/session/{session_id}")
def chat_delete(session_id: str, authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    deleted = container.memory.sessions.delete_session(_checked_session_id(session_id), patient_id=user["id"])
    if not deleted:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return {"success": True, "message": "Chat session deleted successfully"}


async def _read_upload_bytes(upload: UploadFile, *, max_bytes: int) -> bytes:
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File {upload.filename or 'upload'} exceeds {max_bytes // (1024 * 1024)}MB limit.",
        )
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return raw


def _analyze_upload(record: dict[str, Any]) -> dict[str, Any]:
    outcome = container.uploads.process(record["file_path"], record["file_type"], record["category"])
    if not outcome.ok:
        return container.memory.uploads.store_analysis(
            record["id"],
            extracted_text=None,
            ai_analysis=ANALYSIS_FAILED_MESSAGE,
        )
    analysis = outcome.value
    if analysis is None or (analysis.extracted_text is None and analysis.ai_analysis is None):
        return record
    return container.memory.uploads.store_analysis(
        record["id"],
        extracted_text=analysis.extracted_text,
        ai_analysis=analysis.ai_analysis,
        metadata=analysis.metadata,
    )


@app.post("/api/upload")
async def upload_files(
    files: list[UploadFile] | None = File(default=None),
    session_id: str | None = Form(default=None, alias="sessionId"),
    authorization: str | None = Header(default=None),
):
    user = current_user(authorization, role="patient")
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > container.settings.max_upload_files:
        raise HTTPException(
            status_code=400,
            detail=f"A maximum of {container.settings.max_upload_files} files can be uploaded at once",
        )
    if not session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    session_id = _checked_session_id(session_id)

    # Every file is read and size-checked before any of them is written.
    pending: list[tuple[str, str, bytes]] = []
    for upload in files:
        original_name = (upload.filename or "").strip() or "upload"
        mime_type = (upload.content_type or "application/octet-stream").lower().strip()
        raw = await _read_upload_bytes(upload, max_bytes=container.settings.max_upload_bytes)
        pending.append((original_name, mime_type, raw))

    stored: list[dict[str, Any]] = []
    for original_name, mime_type, raw in pending:
        file_name = f"{uuid.uuid4().hex}{Path(original_name).suffix.lower()}"
        file_path = container.upload_dir / file_name
        file_path.write_bytes(raw)
        record = container.memory.uploads.create_upload(
            patient_id=user["id"],
            session_id=session_id,
            file_name=file_name,
            original_name=original_name,
            file_type=mime_type,
            file_size=len(raw),
            file_path=str(file_path),
            file_url=f"/uploads/{file_name}",
            category=category_for_mime(mime_type),
        )
        stored.append(await run_in_threadpool(_analyze_upload, record))

    logger.info("stored %d upload(s) for session %s", len(stored), session_id)
    return {
        "success": True,
        "message": f"{len(stored)} file(s) uploaded successfully",
        "files": [_upload_view(record) for record in stored],
    }


@app.get("/api/upload/session/{session_id}")
def uploads_for_session(session_id: str, authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    uploads = container.memory.uploads.list_for_session(_checked_session_id(session_id), patient_id=user["id"])
    return {"success": True, "uploads": [_upload_view(upload) for upload in uploads]}


@app.delete("/api/upload/{upload_id}")
def delete_upload(upload_id: str, authorization: str | None = Header(default=None)):
    user = current_user(authorization, role="patient")
    record = container.memory.uploads.get_upload(upload_id, patient_id=user["id"])
    if record is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    container.extractor.discard(record["file_path"])
    container.memory.uploads.delete_upload(upload_id, patient_id=user["id"])
    return {"success": True, "message": "Upload deleted successfully"}


def _patient_or_404(patient_id: str) -> dict[str, Any]:
    patient = container.memory.users.get_patient(patient_id)
    if patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


@app.get("/api/doctor/search-patients")
def search_patients(query: str | None = None, authorization: str | None = Header(default=None)):
    current_user(authorization, role="doctor")
    if not query or not query.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    patients = container.memory.users.search_patients(query)
    return {
        "success": True,
        "patients": [
            {
                "patientId": patient["patient_id"],
                "name": patient["name"],
                "email": patient["email"],
                "phone": patient["phone"],
                "createdAt": patient["created_at"],
            }
            for patient in patients
        ],
    }


@app.get("/api/doctor/patient/{patient_id}")
def doctor_patient(patient_id: str, authorization: str | None = Header(default=None)):
    current_user(authorization, role="doctor")
    patient = _patient_or_404(patient_id)
    return {
        "success": True,
        "patient": {
            "id": patient["id"],
            "patientId": patient["patient_id"],
            "name": patient["name"],
            "email": patient["email"],
            "phone": patient["phone"],
            "dateOfBirth": patient["date_of_birth"],
            "gender": patient["gender"],
            "medicalHistory": patient["medical_history"],
            "createdAt": patient["created_at"],
        },
    }


@app.get("/api/doctor/patient/{patient_id}/chats")
def doctor_patient_chats(patient_id: str, authorization: str | None = Header(default=None)):
    current_user(authorization, role="doctor")
    patient = _patient_or_404(patient_id)
    chats = container.memory.sessions.list_sessions_with_messages(patient["id"])
    return {
        "success": True,
        "patientInfo": _patient_info(patient),
        "chats": [_session_view(chat) for chat in chats],
    }


@app.get("/api/doctor/patient/{patient_id}/uploads")
def doctor_patient_uploads(patient_id: str, authorization: str | None = Header(default=None)):
    current_user(authorization, role="doctor")
    patient = _patient_or_404(patient_id)
    uploads = container.memory.uploads.list_for_patient(patient["id"])
    return {
        "success": True,
        "patientInfo": _patient_info(patient),
        "uploads": [_upload_view(upload) for upload in uploads],
    }


@app.post("/api/doctor/patient/{patient_id}/chat")
def doctor_chat(patient_id: str, payload: DoctorChatRequest, authorization: str | None = Header(default=None)):
    doctor = current_user(authorization, role="doctor")
    if not payload.message:
        raise HTTPException(status_code=400, detail="Message is required")
    patient = _patient_or_404(patient_id)

    history: list[HistoryEntry] = []
    if payload.session_id:
        session = container.memory.sessions.get_session(
            _checked_session_id(payload.session_id),
            patient_id=patient["id"],
        )
        if session is not None:
            history = [HistoryEntry.from_message(message) for message in session["messages"]]

    logger.info("doctor %s queried patient %s", doctor["id"], patient["patient_id"])
    result = container.orchestrator.handle_turn(
        ChatTurn(
            text=f"Doctor inquiry about patient {patient['name']} ({patient['patient_id']}): {payload.message}",
            modality=Modality.TEXT.value,
            history=history,
        )
    )
    return {
        "success": True,
        "response": result.content,
        "explanation": result.explanation,
        "patientId": patient["patient_id"],
    }
