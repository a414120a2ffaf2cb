from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from onechart import config
from onechart.ai_gateway import AIGateway, HistoryItem
from onechart.errors import (
    DocumentNotFound,
    GenerationFailed,
    InvalidStatusTransition,
    PipelineAlreadyRunning,
    TaskNotFound,
)
from onechart.models import (
    AudioPayload,
    Document,
    Profile,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
    Template,
)
from onechart.pipeline import (
    FAILURE_TRANSCRIPT,
    SessionPipeline,
    SessionRequest,
    patient_info_summary,
    persist_best_effort,
)
from onechart.recording import DEFAULT_MIME, RecordingController
from onechart.resume import ResumeFlow
from onechart.session_store import SqliteSessionStore
from onechart.task_registry import TaskRegistry
from onechart.templates import TemplateRegistry
from onechart.view_store import SessionListStore

logger = logging.getLogger("onechart.services")

CHAT_UNAVAILABLE = "Opal is temporarily unavailable."
CHAT_EMPTY_REPLY = "I apologize, I couldn't process that request."
CHAT_DOCUMENT_TITLE = "New Document"
CHAT_DOCUMENT_TYPE = "Supplemental"

_EDITABLE_FIELDS = {
    "patient_name",
    "patient_gender",
    "transcript",
    "context",
    "documents",
    "tasks",
    "status",
}


class TaskEntry(BaseModel):
    session_id: str
    patient_name: str
    session_date: datetime
    task: Task


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ScribeService:
    """
    Owns every user's session list and the flows that write to it.
    The HTTP layer only talks to this object.
    """

    def __init__(
        self,
        gateway: AIGateway,
        store: SqliteSessionStore,
        templates: Optional[List[Template]] = None,
        recorder: Optional[RecordingController] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self._template_seed = templates
        self.registry = TaskRegistry()
        self.pipeline = SessionPipeline(gateway, store, self.registry)
        self.resume = ResumeFlow(gateway, store, self.registry, recorder)
        self._views: Dict[str, SessionListStore] = {}
        self._templates: Dict[str, TemplateRegistry] = {}

    def view(self, user_id: str) -> SessionListStore:
        view = self._views.get(user_id)
        if view is None:
            view = self._views.setdefault(user_id, SessionListStore())
        return view

    def templates_for(self, user_id: str) -> TemplateRegistry:
        """Each user edits a private copy of the drafting templates."""
        registry = self._templates.get(user_id)
        if registry is None:
            registry = self._templates.setdefault(user_id, TemplateRegistry(self._template_seed))
        return registry

    async def aclose(self) -> None:
        await self.registry.drain(cancel=True)

    # =========================
    # Profile / settings
    # =========================

    async def get_profile(self, user_id: str, email: str = "") -> Profile:
        return await asyncio.to_thread(self.store.fetch_profile, user_id, email)

    async def save_profile(self, profile: Profile) -> Profile:
        await asyncio.to_thread(self.store.upsert_profile, profile)
        return profile

    async def _practice_info(self, user_id: str) -> str:
        try:
            profile = await self.get_profile(user_id)
        except Exception as e:
            logger.warning(f"Profile unavailable; using default practice info (user={user_id}): {e}")
            return config.DEFAULT_PRACTICE_INFO
        return profile.practice_info or config.DEFAULT_PRACTICE_INFO

    # =========================
    # Session list
    # =========================

    async def load_sessions(self, user_id: str, email: str = "", refresh: bool = False) -> List[Session]:
        view = self.view(user_id)
        if view.loaded and not refresh:
            return view.list()

        try:
            profile = await self.get_profile(user_id, email)
            if profile.auto_delete_days:
                cutoff = _utc_now() - timedelta(days=profile.auto_delete_days)
                await asyncio.to_thread(self.store.delete_sessions_older_than, user_id, cutoff)
        except Exception:
            logger.exception(f"Retention purge skipped (user={user_id})")

        sessions = await asyncio.to_thread(self.store.fetch_sessions_for_user, user_id)
        local = {s.id: s for s in view.list()}
        merged: List[Session] = []
        for row in sessions:
            mine = local.pop(row.id, None)
            if self.registry.is_running(row.id):
                # Work in flight keeps its local state.
                merged.append(mine or row)
            elif row.status == SessionStatus.PROCESSING:
                merged.append(await self._settle_stranded(row, mine))
            else:
                merged.append(row)
        merged.extend(s for s in local.values() if self.registry.is_running(s.id))
        view.load(merged)
        return view.list()

    async def _settle_stranded(self, row: Session, local: Optional[Session]) -> Session:
        """
        A stored `processing` row with nothing running for it. The local
        result wins when there is one; otherwise the row failed mid-run.
        """
        if local is not None and local.status != SessionStatus.PROCESSING:
            settled = local
        else:
            settled = row.model_copy(
                update={
                    "status": SessionStatus.DRAFT,
                    "transcript": row.transcript or FAILURE_TRANSCRIPT,
                }
            )
            logger.warning(f"Stranded processing session moved to draft (sid={row.id})")
        await persist_best_effort(
            "status", row.id, self.store.update_session_record, row.id, {"status": settled.status.value}
        )
        return settled

    async def list_sessions(self, user_id: str) -> List[Session]:
        return await self.load_sessions(user_id)

    async def get_session(self, user_id: str, session_id: str) -> Session:
        await self.load_sessions(user_id)
        return self.view(user_id).get(session_id)

    # =========================
    # New visit
    # =========================

    async def start_session(
        self,
        user_id: str,
        audio: AudioPayload,
        *,
        patient_name: str = "",
        patient_gender: str = "",
        template_id: Optional[str] = None,
        context: str = "",
    ) -> Optional[Session]:
        await self.load_sessions(user_id)
        request = SessionRequest(
            user_id=user_id,
            audio=audio,
            template=self.templates_for(user_id).resolve(template_id),
            patient_name=patient_name or "",
            patient_gender=patient_gender or "",
            context=context or "",
            practice_info=await self._practice_info(user_id),
        )
        return await self.pipeline.start(request, self.view(user_id))

    async def cancel_processing(self, user_id: str, session_id: str) -> bool:
        self.view(user_id).get(session_id)
        return self.pipeline.cancel(session_id)

    # =========================
    # Edits
    # =========================

    async def update_session(
        self,
        user_id: str,
        session_id: str,
        changes: Dict[str, Any],
        *,
        regenerate: bool = False,
    ) -> Session:
        """
        Apply edits locally first, then persist each touched group.
        Storage failures are logged; the local edit stands.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit fields: {sorted(unknown)}")
        view = self.view(user_id)
        before = view.get(session_id)
        if "status" in changes:
            # `processing` is only ever entered by the pipeline or a resume.
            target = SessionStatus(changes["status"])
            if target == SessionStatus.PROCESSING:
                raise InvalidStatusTransition(before.status.value, target.value)
            if self.registry.is_running(session_id):
                raise PipelineAlreadyRunning(session_id)
        updated = view.update(session_id, **changes)
        sid = session_id

        row: Dict[str, Any] = {}
        for key in ("patient_name", "patient_gender"):
            if key in changes:
                row[key] = changes[key]
        if "status" in changes:
            row["status"] = SessionStatus(changes["status"]).value
        if row:
            await persist_best_effort("session", sid, self.store.update_session_record, sid, row)

        if ("patient_name" in changes or "patient_gender" in changes) and updated.patient_id:
            await persist_best_effort(
                "patient",
                sid,
                self.store.update_patient,
                updated.patient_id,
                {"full_name": changes.get("patient_name"), "gender": changes.get("patient_gender")},
            )
        if "transcript" in changes:
            await persist_best_effort("transcript", sid, self.store.upsert_session_transcript, sid, updated.transcript)
        if "context" in changes:
            await persist_best_effort("context", sid, self.store.upsert_session_context, sid, updated.context)
        if "documents" in changes:
            await persist_best_effort("notes", sid, self.store.upsert_session_notes, sid, updated.documents)
        if "tasks" in changes:
            await persist_best_effort("tasks", sid, self.store.replace_session_tasks, sid, updated.tasks)

        gender_changed = "patient_gender" in changes and changes["patient_gender"] != before.patient_gender
        if regenerate and gender_changed and updated.documents:
            return await self.regenerate_document(user_id, session_id)
        return updated

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        view = self.view(user_id)
        view.get(session_id)
        self.registry.cancel(session_id)
        self.resume.cancel_recording(session_id)
        removed = view.remove(session_id)
        await persist_best_effort("delete", session_id, self.store.delete_session, session_id)
        return removed

    # =========================
    # Documents
    # =========================

    def _target_document(self, session: Session, document_id: Optional[str]) -> Document:
        doc = session.document(document_id) if document_id else session.primary_document()
        if doc is None:
            raise DocumentNotFound(session.id, document_id or "")
        return doc

    async def _replace_document(self, user_id: str, session_id: str, document: Document) -> Session:
        view = self.view(user_id)
        current = view.get(session_id)
        documents = [document if d.id == document.id else d for d in current.documents]
        updated = view.update(session_id, documents=documents)
        await persist_best_effort("notes", session_id, self.store.upsert_session_notes, session_id, [document])
        return updated

    async def _append_document(self, user_id: str, session_id: str, document: Document) -> Session:
        view = self.view(user_id)
        current = view.get(session_id)
        updated = view.update(session_id, documents=list(current.documents) + [document])
        await persist_best_effort("notes", session_id, self.store.upsert_session_notes, session_id, [document])
        return updated

    async def regenerate_document(
        self,
        user_id: str,
        session_id: str,
        document_id: Optional[str] = None,
        *,
        patient_name: Optional[str] = None,
        patient_gender: Optional[str] = None,
    ) -> Session:
        """
        Redraft one document from the stored transcript, context and template.
        Transcript, tasks and status are left alone.
        """
        session = self.view(user_id).get(session_id)
        doc = self._target_document(session, document_id)
        template = self.templates_for(user_id).resolve(session.template_id)
        try:
            content = await self.gateway.draft_document(
                session.transcript,
                session.context,
                template.system_prompt,
                patient_info_summary(patient_name or session.patient_name, patient_gender or session.patient_gender),
                await self._practice_info(user_id),
            )
        except Exception as exc:
            logger.warning(f"Regeneration failed (sid={session_id}): {exc}")
            raise GenerationFailed("Failed to regenerate note.") from exc
        return await self._replace_document(user_id, session_id, doc.model_copy(update={"content": content}))

    async def create_document(self, user_id: str, session_id: str, doc_type: str) -> Session:
        doc_type = (doc_type or "").strip()
        if not doc_type:
            raise ValueError("Document type is required.")
        session = self.view(user_id).get(session_id)
        try:
            content = await self.gateway.draft_document(
                session.transcript,
                session.context,
                f"Create a {doc_type}.",
                patient_info_summary(session.patient_name, session.patient_gender),
                await self._practice_info(user_id),
            )
        except Exception as exc:
            logger.warning(f"Document generation failed (sid={session_id}): {exc}")
            raise GenerationFailed("Failed to generate document") from exc
        return await self._append_document(
            user_id, session_id, Document(title=doc_type, type=doc_type, content=content)
        )

    async def add_document_from_chat(self, user_id: str, session_id: str, content: str) -> Session:
        return await self._append_document(
            user_id,
            session_id,
            Document(title=CHAT_DOCUMENT_TITLE, type=CHAT_DOCUMENT_TYPE, content=content or ""),
        )

    async def save_document(self, user_id: str, session_id: str, document_id: str, content: str) -> Session:
        session = self.view(user_id).get(session_id)
        doc = self._target_document(session, document_id)
        return await self._replace_document(user_id, session_id, doc.model_copy(update={"content": content}))

    async def append_to_document(self, user_id: str, session_id: str, document_id: str, text: str) -> Session:
        session = self.view(user_id).get(session_id)
        doc = self._target_document(session, document_id)
        content = doc.content + "\n\n" + text
        return await self._replace_document(user_id, session_id, doc.model_copy(update={"content": content}))

    # =========================
    # Tasks
    # =========================

    async def set_task_status(self, user_id: str, session_id: str, task_id: str, status: TaskStatus) -> Session:
        session = self.view(user_id).get(session_id)
        if not any(t.id == task_id for t in session.tasks):
            raise TaskNotFound(session_id, task_id)
        tasks = [t.model_copy(update={"status": status}) if t.id == task_id else t for t in session.tasks]
        return await self.update_session(user_id, session_id, {"tasks": tasks})

    async def delete_task(self, user_id: str, session_id: str, task_id: str) -> Session:
        session = self.view(user_id).get(session_id)
        if not any(t.id == task_id for t in session.tasks):
            raise TaskNotFound(session_id, task_id)
        tasks = [t for t in session.tasks if t.id != task_id]
        return await self.update_session(user_id, session_id, {"tasks": tasks})

    async def list_tasks(self, user_id: str, status: Optional[TaskStatus] = None) -> List[TaskEntry]:
        out: List[TaskEntry] = []
        for session in await self.load_sessions(user_id):
            for task in session.tasks:
                if status and task.status != status:
                    continue
                out.append(
                    TaskEntry(
                        session_id=session.id,
                        patient_name=session.patient_name,
                        session_date=session.date,
                        task=task,
                    )
                )
        return out

    # =========================
    # Assistant chat
    # =========================

    async def chat(
        self,
        user_id: str,
        session_id: str,
        history: Iterable[HistoryItem],
        document_id: Optional[str] = None,
    ) -> str:
        history = list(history)
        if not history:
            raise ValueError("Chat history is empty.")
        session = self.view(user_id).get(session_id)
        doc = session.document(document_id) if document_id else session.primary_document()
        try:
            reply = await self.gateway.chat(history, doc.content if doc else "", session.transcript)
        except Exception as e:
            logger.warning(f"Assistant chat failed (sid={session_id}): {e}")
            return CHAT_UNAVAILABLE
        return reply or CHAT_EMPTY_REPLY

    # =========================
    # Resume
    # =========================

    async def start_resume_recording(self, user_id: str, session_id: str, mime_type: str = DEFAULT_MIME) -> None:
        await self.load_sessions(user_id)
        self.resume.start_recording(self.view(user_id), session_id, mime_type)

    async def append_resume_audio(self, user_id: str, session_id: str, chunk: bytes) -> int:
        self.view(user_id).get(session_id)
        return self.resume.append_audio(session_id, chunk)

    async def cancel_resume_recording(self, user_id: str, session_id: str) -> bool:
        self.view(user_id).get(session_id)
        return self.resume.cancel_recording(session_id)

    async def finish_resume(
        self,
        user_id: str,
        session_id: str,
        *,
        document_id: Optional[str] = None,
        audio: Optional[AudioPayload] = None,
    ) -> Session:
        await self.load_sessions(user_id)
        session = self.view(user_id).get(session_id)
        return await self.resume.finish(
            self.view(user_id),
            session_id,
            template=self.templates_for(user_id).resolve(session.template_id),
            practice_info=await self._practice_info(user_id),
            document_id=document_id,
            audio=audio,
        )
