from __future__ import annotations

import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel

from onechart.auth import AuthUser, require_user
from onechart.errors import (
    AIGatewayError,
    DocumentNotFound,
    GenerationFailed,
    InvalidAudio,
    InvalidStatusTransition,
    OneChartError,
    PersistenceError,
    PipelineAlreadyRunning,
    RecordingInProgress,
    RecordingNotFound,
    ResumeFailed,
    ResumeInProgress,
    SessionNotFound,
    SessionNotResumable,
    TaskNotFound,
    TemplateNotFound,
)
from onechart.models import ChatMessage, Document, Profile, SessionStatus, Task, TaskStatus
from onechart.recording import DEFAULT_MIME, payload_from_upload
from onechart.services import ScribeService

# NOTE: prefixing is handled in main.py (include_router(router, prefix="/api"))
router = APIRouter()
logger = logging.getLogger("onechart.api")


def get_service(request: Request) -> ScribeService:
    return request.app.state.scribe


_NOT_FOUND = (SessionNotFound, DocumentNotFound, TaskNotFound, TemplateNotFound, RecordingNotFound)
_CONFLICT = (
    InvalidStatusTransition,
    PipelineAlreadyRunning,
    RecordingInProgress,
    ResumeInProgress,
    SessionNotResumable,
)
_UPSTREAM = (ResumeFailed, GenerationFailed, AIGatewayError)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, _NOT_FOUND):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, _CONFLICT):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, _UPSTREAM):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (InvalidAudio, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail="Storage is unavailable. Please try again.")
    logger.error(f"Unmapped domain error: {exc.__class__.__name__}: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


# =========================
# Health check
# =========================

@router.get("/ping")
def ping():
    return {"message": "OneChart is alive"}


# =========================
# Sessions
# =========================

class SessionPatch(BaseModel):
    patient_name: Optional[str] = None
    patient_gender: Optional[str] = None
    transcript: Optional[str] = None
    context: Optional[str] = None
    documents: Optional[List[Document]] = None
    tasks: Optional[List[Task]] = None
    status: Optional[SessionStatus] = None
    regenerate: bool = False


@router.post("/sessions", status_code=202)
async def create_session(
    file: UploadFile = File(...),
    patient_name: str = Form(""),
    patient_gender: str = Form(""),
    template_id: Optional[str] = Form(None),
    context: str = Form(""),
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    audio_bytes = await file.read()
    try:
        audio = payload_from_upload(audio_bytes, file.filename, file.content_type)
        session = await svc.start_session(
            user.id,
            audio,
            patient_name=patient_name,
            patient_gender=patient_gender,
            template_id=template_id,
            context=context,
        )
    except (OneChartError, ValueError) as e:
        raise _http_error(e)
    if session is None:
        raise HTTPException(status_code=503, detail="Failed to create session. Please try again.")
    return {"session": session}


@router.get("/sessions")
async def list_sessions(
    refresh: bool = False,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        sessions = await svc.load_sessions(user.id, user.email, refresh=refresh)
    except OneChartError as e:
        raise _http_error(e)
    return {"sessions": sessions}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        return {"session": await svc.get_session(user.id, session_id)}
    except OneChartError as e:
        raise _http_error(e)


@router.patch("/sessions/{session_id}")
async def patch_session(
    session_id: str,
    payload: SessionPatch,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"regenerate"})
    if "documents" in changes:
        changes["documents"] = payload.documents
    if "tasks" in changes:
        changes["tasks"] = payload.tasks
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update.")
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.update_session(user.id, session_id, changes, regenerate=payload.regenerate)
    except (OneChartError, ValueError) as e:
        raise _http_error(e)
    return {"session": session}


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        deleted = await svc.delete_session(user.id, session_id)
    except OneChartError as e:
        raise _http_error(e)
    return {"deleted": deleted}


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        cancelled = await svc.cancel_processing(user.id, session_id)
    except OneChartError as e:
        raise _http_error(e)
    return {"cancelled": cancelled}


# =========================
# Resume recording
# =========================

class ResumeStartPayload(BaseModel):
    mime_type: str = DEFAULT_MIME


@router.post("/sessions/{session_id}/resume/start")
async def resume_start(
    session_id: str,
    payload: Optional[ResumeStartPayload] = None,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    mime_type = payload.mime_type if payload else DEFAULT_MIME
    try:
        await svc.start_resume_recording(user.id, session_id, mime_type)
    except OneChartError as e:
        raise _http_error(e)
    return {"recording": True}


@router.post("/sessions/{session_id}/resume/chunk")
async def resume_chunk(
    session_id: str,
    file: UploadFile = File(...),
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    chunk = await file.read()
    try:
        size = await svc.append_resume_audio(user.id, session_id, chunk)
    except OneChartError as e:
        raise _http_error(e)
    return {"bytes": size}


@router.post("/sessions/{session_id}/resume/stop")
async def resume_stop(
    session_id: str,
    document_id: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    start = time.time()
    try:
        audio = None
        if file is not None:
            audio = payload_from_upload(await file.read(), file.filename, file.content_type)
        session = await svc.finish_resume(user.id, session_id, document_id=document_id, audio=audio)
    except OneChartError as e:
        raise _http_error(e)
    logger.info(f"Resume request finished in {round(time.time() - start, 2)}s (sid={session_id})")
    return {"session": session}


@router.post("/sessions/{session_id}/resume/cancel")
async def resume_cancel(
    session_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        cancelled = await svc.cancel_resume_recording(user.id, session_id)
    except OneChartError as e:
        raise _http_error(e)
    return {"cancelled": cancelled}


# =========================
# Documents
# =========================

class NewDocumentPayload(BaseModel):
    doc_type: str


class DocumentContentPayload(BaseModel):
    content: str


class AppendPayload(BaseModel):
    text: str


class RegeneratePayload(BaseModel):
    patient_name: Optional[str] = None
    patient_gender: Optional[str] = None


@router.post("/sessions/{session_id}/documents")
async def create_document(
    session_id: str,
    payload: NewDocumentPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.create_document(user.id, session_id, payload.doc_type)
    except (OneChartError, ValueError) as e:
        raise _http_error(e)
    return {"session": session}


@router.post("/sessions/{session_id}/documents/from_chat")
async def create_document_from_chat(
    session_id: str,
    payload: DocumentContentPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.add_document_from_chat(user.id, session_id, payload.content)
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


@router.put("/sessions/{session_id}/documents/{document_id}")
async def save_document(
    session_id: str,
    document_id: str,
    payload: DocumentContentPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.save_document(user.id, session_id, document_id, payload.content)
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


@router.post("/sessions/{session_id}/documents/{document_id}/regenerate")
async def regenerate_document(
    session_id: str,
    document_id: str,
    payload: Optional[RegeneratePayload] = None,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    payload = payload or RegeneratePayload()
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.regenerate_document(
            user.id,
            session_id,
            document_id,
            patient_name=payload.patient_name,
            patient_gender=payload.patient_gender,
        )
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


@router.post("/sessions/{session_id}/documents/{document_id}/append")
async def append_to_document(
    session_id: str,
    document_id: str,
    payload: AppendPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.append_to_document(user.id, session_id, document_id, payload.text)
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


# =========================
# Tasks
# =========================

class TaskStatusPayload(BaseModel):
    status: TaskStatus


@router.patch("/sessions/{session_id}/tasks/{task_id}")
async def set_task_status(
    session_id: str,
    task_id: str,
    payload: TaskStatusPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.set_task_status(user.id, session_id, task_id, payload.status)
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


@router.delete("/sessions/{session_id}/tasks/{task_id}")
async def delete_task(
    session_id: str,
    task_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        session = await svc.delete_task(user.id, session_id, task_id)
    except OneChartError as e:
        raise _http_error(e)
    return {"session": session}


@router.get("/tasks")
async def list_tasks(
    status: Optional[TaskStatus] = None,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        tasks = await svc.list_tasks(user.id, status)
    except OneChartError as e:
        raise _http_error(e)
    return {"tasks": tasks}


# =========================
# Assistant chat
# =========================

class ChatPayload(BaseModel):
    messages: List[ChatMessage]
    document_id: Optional[str] = None


@router.post("/sessions/{session_id}/chat")
async def chat(
    session_id: str,
    payload: ChatPayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        await svc.load_sessions(user.id, user.email)
        reply = await svc.chat(user.id, session_id, payload.messages, payload.document_id)
    except (OneChartError, ValueError) as e:
        raise _http_error(e)
    return {"reply": reply}


# =========================
# Templates
# =========================

class TemplatePayload(BaseModel):
    name: str
    system_prompt: str
    description: str = ""


@router.get("/templates")
def list_templates(user: AuthUser = Depends(require_user), svc: ScribeService = Depends(get_service)):
    return {"templates": svc.templates_for(user.id).list()}


@router.post("/templates")
def create_template(
    payload: TemplatePayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        template = svc.templates_for(user.id).add(payload.name, payload.system_prompt, payload.description)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"template": template}


@router.delete("/templates/{template_id}")
def delete_template(
    template_id: str,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    if not svc.templates_for(user.id).delete(template_id):
        raise HTTPException(status_code=404, detail="Template not found")
    return {"deleted": True}


# =========================
# Profile / settings
# =========================

class ProfilePayload(BaseModel):
    full_name: str = ""
    email: str = ""
    practice: str = ""
    speciality: str = ""
    phone_number: str = ""
    practice_name: str = ""
    practice_info: str = ""
    auto_delete_days: Optional[int] = None


@router.get("/profile")
async def get_profile(
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    try:
        return {"profile": await svc.get_profile(user.id, user.email)}
    except OneChartError as e:
        raise _http_error(e)


@router.put("/profile")
async def save_profile(
    payload: ProfilePayload,
    user: AuthUser = Depends(require_user),
    svc: ScribeService = Depends(get_service),
):
    if payload.auto_delete_days is not None and payload.auto_delete_days < 1:
        raise HTTPException(status_code=400, detail="auto_delete_days must be at least 1.")
    data = payload.model_dump()
    data["email"] = data["email"] or user.email
    try:
        profile = await svc.save_profile(Profile(id=user.id, **data))
    except OneChartError as e:
        raise _http_error(e)
    return {"profile": profile}
