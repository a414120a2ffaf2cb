from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Tuple

from onechart.ai_gateway import AIGateway
from onechart.errors import (
    DocumentNotFound,
    PipelineAlreadyRunning,
    ResumeFailed,
    ResumeInProgress,
    SessionNotFound,
    SessionNotResumable,
)
from onechart.models import AudioPayload, Document, Session, SessionStatus, Task, Template
from onechart.pipeline import build_tasks, patient_info_summary, persist_best_effort
from onechart.recording import DEFAULT_MIME, RecordingController
from onechart.session_store import SqliteSessionStore
from onechart.task_registry import TaskRegistry
from onechart.view_store import SessionListStore

logger = logging.getLogger("onechart.resume")

RESUME_DELIMITER = "\n\n[RESUMED SESSION]: "


def append_segment(transcript: str, segment: str) -> str:
    return (transcript or "") + RESUME_DELIMITER + segment


class ResumeFlow:
    """
    Adds a further recording to a completed session and redrafts its
    primary document from the combined transcript.

    On any AI failure the session goes back to `completed` with its previous
    transcript, documents and tasks untouched, and ResumeFailed is raised.
    """

    def __init__(
        self,
        gateway: AIGateway,
        store: SqliteSessionStore,
        registry: TaskRegistry,
        recorder: Optional[RecordingController] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.registry = registry
        self.recorder = recorder if recorder is not None else RecordingController()

    # -------------------------
    # Recording
    # -------------------------

    def _check_resumable(self, view: SessionListStore, session_id: str) -> Session:
        session = view.get(session_id)
        if self.registry.is_running(session_id) or session.status == SessionStatus.PROCESSING:
            raise ResumeInProgress(session_id)
        if session.status != SessionStatus.COMPLETED:
            raise SessionNotResumable(session_id, session.status.value)
        return session

    def start_recording(self, view: SessionListStore, session_id: str, mime_type: str = DEFAULT_MIME) -> None:
        self._check_resumable(view, session_id)
        self.recorder.start(session_id, mime_type)

    def append_audio(self, session_id: str, chunk: bytes) -> int:
        return self.recorder.append(session_id, chunk)

    def cancel_recording(self, session_id: str) -> bool:
        # Nothing was sent anywhere yet; dropping the buffer is the whole job.
        return self.recorder.cancel(session_id)

    # -------------------------
    # Merge
    # -------------------------

    async def finish(
        self,
        view: SessionListStore,
        session_id: str,
        *,
        template: Template,
        practice_info: str = "",
        document_id: Optional[str] = None,
        audio: Optional[AudioPayload] = None,
    ) -> Session:
        """
        Stop the capture (or take `audio` directly) and merge it into the
        session. Awaited by the caller; tracked in the registry meanwhile,
        so `registry.cancel(session_id)` aborts it and raises ResumeFailed here.
        """
        session = self._check_resumable(view, session_id)
        if document_id and session.document(document_id) is None:
            raise DocumentNotFound(session_id, document_id)
        if audio is None:
            audio = self.recorder.stop(session_id)
        else:
            self.recorder.cancel(session_id)

        try:
            task = self.registry.launch(
                session_id,
                self._run(view, session, audio, template, practice_info, document_id),
            )
        except PipelineAlreadyRunning as exc:
            raise ResumeInProgress(session_id) from exc
        await asyncio.wait({task})
        if task.cancelled():
            raise ResumeFailed(session_id)
        return task.result()

    async def _run(
        self,
        view: SessionListStore,
        previous: Session,
        audio: AudioPayload,
        template: Template,
        practice_info: str,
        document_id: Optional[str],
    ) -> Session:
        sid = previous.id
        started = time.time()

        view.update(sid, status=SessionStatus.PROCESSING)
        try:
            await persist_best_effort(
                "status", sid, self.store.update_session_record, sid, {"status": SessionStatus.PROCESSING.value}
            )
            segment = await self.gateway.transcribe(audio.data, audio.mime_type)
            combined = append_segment(previous.transcript, segment)
            note = await self.gateway.draft_document(
                combined,
                previous.context,
                template.system_prompt,
                patient_info_summary(previous.patient_name, previous.patient_gender),
                practice_info,
            )
            raw_tasks = await self.gateway.extract_tasks(note)
        except asyncio.CancelledError:
            logger.warning(f"Resume cancelled; previous content kept (sid={sid})")
            await self._restore(view, previous)
            raise
        except Exception as exc:
            logger.exception(f"Resume failed; previous content kept (sid={sid})")
            await self._restore(view, previous)
            raise ResumeFailed(sid, exc) from exc

        tasks = build_tasks(raw_tasks, sid)
        documents, changed = _redraft_documents(previous, document_id, template, note)

        # Once the AI work is done the merge is written through even if a
        # cancel arrives; the session then settles as `completed` with it.
        commit = asyncio.ensure_future(self._commit(view, sid, combined, documents, changed, tasks))
        try:
            updated = await asyncio.shield(commit)
        except asyncio.CancelledError:
            logger.warning(f"Cancel arrived while writing the merge; keeping it (sid={sid})")
            updated = await commit
        logger.info(
            f"Resumed segment merged in {time.time() - started:.2f}s (sid={sid}) added_chars={len(segment)}"
        )
        return updated

    async def _commit(
        self,
        view: SessionListStore,
        sid: str,
        combined: str,
        documents: List[Document],
        changed: Document,
        tasks: List[Task],
    ) -> Session:
        await persist_best_effort("transcript", sid, self.store.upsert_session_transcript, sid, combined)
        await persist_best_effort("notes", sid, self.store.upsert_session_notes, sid, [changed])
        await persist_best_effort("tasks", sid, self.store.replace_session_tasks, sid, tasks)
        await persist_best_effort(
            "status", sid, self.store.update_session_record, sid, {"status": SessionStatus.COMPLETED.value}
        )
        return view.update(
            sid,
            transcript=combined,
            documents=documents,
            tasks=tasks,
            status=SessionStatus.COMPLETED,
        )

    async def _restore(self, view: SessionListStore, previous: Session) -> None:
        sid = previous.id
        try:
            view.update(
                sid,
                status=SessionStatus.COMPLETED,
                transcript=previous.transcript,
                documents=previous.documents,
                tasks=previous.tasks,
            )
        except SessionNotFound:
            return
        await persist_best_effort(
            "status", sid, self.store.update_session_record, sid, {"status": SessionStatus.COMPLETED.value}
        )


def _redraft_documents(
    session: Session,
    document_id: Optional[str],
    template: Template,
    content: str,
) -> Tuple[List[Document], Document]:
    target = session.document(document_id) if document_id else session.primary_document()
    if target is None:
        created = Document(title=template.name, type=template.name, content=content)
        return list(session.documents) + [created], created
    changed = target.model_copy(update={"content": content})
    return [changed if d.id == target.id else d for d in session.documents], changed
