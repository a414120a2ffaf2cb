"""
Audio-to-record processing for a new visit.

`SessionPipeline.start` creates the patient and session rows and shows a
placeholder in the user's session list; everything after that (transcribe,
title, draft, extract tasks, persist) runs as a background task keyed by the
session id. The placeholder ends up either `completed` with its transcript,
note and tasks, or `draft` with FAILURE_TRANSCRIPT. It is never left in
`processing`.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from onechart.ai_gateway import AIGateway
from onechart.errors import InvalidStatusTransition, SessionNotFound
from onechart.models import (
    DEFAULT_TASK_TAG,
    UNKNOWN_GENDER,
    AudioPayload,
    Document,
    Session,
    SessionStatus,
    Task,
    Template,
)
from onechart.session_store import SqliteSessionStore
from onechart.task_registry import TaskRegistry
from onechart.view_store import SessionListStore

logger = logging.getLogger("onechart.pipeline")

PLACEHOLDER_NAME = "Processing Session..."
PLACEHOLDER_TRANSCRIPT = "Processing audio..."
FALLBACK_TITLE = "New Session"
FAILURE_TRANSCRIPT = "Processing failed. Please check your network and try again."

SettledCallback = Callable[[Optional[Session]], Any]


@dataclass
class SessionRequest:
    user_id: str
    audio: AudioPayload
    template: Template
    patient_name: str = ""
    patient_gender: str = ""
    context: str = ""
    practice_info: str = ""


def patient_info_summary(name: str, gender: str) -> str:
    return f"{name} ({(gender or '').strip() or UNKNOWN_GENDER})"


def build_tasks(raw: Any, session_id: str) -> List[Task]:
    """
    Turn extraction output into pending tasks. Anything that is not a list
    yields no tasks; entries without text are dropped.
    """
    if not isinstance(raw, list):
        return []
    tasks: List[Task] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        tag = str(item.get("tag") or "").strip() or DEFAULT_TASK_TAG
        tasks.append(
            Task(
                id=f"{session_id}-task-{len(tasks)}",
                content=content,
                tag=tag,
                status="pending",
                session_id=session_id,
            )
        )
    return tasks


async def extract_tasks_safely(gateway: AIGateway, document_text: str, session_id: str) -> List[Task]:
    try:
        raw = await gateway.extract_tasks(document_text)
    except Exception as e:
        logger.warning(f"Task extraction failed; continuing without tasks (sid={session_id}): {e}")
        return []
    if not isinstance(raw, list):
        logger.warning(f"Task extraction returned {type(raw).__name__}; ignoring (sid={session_id})")
    return build_tasks(raw, session_id)


async def persist_best_effort(step: str, session_id: str, fn: Callable[..., Any], *args: Any) -> bool:
    """Run one blocking store call off the loop. Failures are logged, never raised."""
    try:
        await asyncio.to_thread(fn, *args)
        return True
    except Exception:
        logger.exception(f"Persist '{step}' failed (sid={session_id})")
        return False


class SessionPipeline:
    def __init__(
        self,
        gateway: AIGateway,
        store: SqliteSessionStore,
        registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.registry = registry if registry is not None else TaskRegistry()

    # -------------------------
    # Public surface
    # -------------------------

    async def start(
        self,
        request: SessionRequest,
        view: SessionListStore,
        on_settled: Optional[SettledCallback] = None,
    ) -> Optional[Session]:
        """
        Create the placeholder and launch the background run.

        Returns the placeholder once it is visible in `view`, or None when
        the rows could not be created (nothing is left behind in that case).
        """
        display_name = request.patient_name.strip() or PLACEHOLDER_NAME
        display_gender = request.patient_gender.strip() or UNKNOWN_GENDER
        template = request.template

        try:
            patient, row = await asyncio.to_thread(
                lambda: self.store.create_session_with_patient(
                    user_id=request.user_id,
                    patient_name=display_name,
                    patient_gender=display_gender,
                    template_id=template.id,
                    template_name=template.name,
                    title=display_name,
                    status=SessionStatus.PROCESSING.value,
                )
            )
        except Exception:
            logger.exception(f"Failed to create session (user={request.user_id})")
            return None

        placeholder = Session(
            id=row["id"],
            patient_id=patient["id"],
            user_id=request.user_id,
            patient_name=display_name,
            patient_gender=display_gender,
            template_id=template.id,
            template_name=template.name,
            transcript=PLACEHOLDER_TRANSCRIPT,
            documents=[],
            context=request.context,
            status=SessionStatus.PROCESSING,
        )
        view.insert_placeholder(placeholder)
        logger.info(f"Session placeholder created (sid={placeholder.id})")

        self.registry.launch(placeholder.id, self._run(request, placeholder, view, on_settled))
        return placeholder

    def is_running(self, session_id: str) -> bool:
        return self.registry.is_running(session_id)

    async def wait(self, session_id: str) -> Optional[Session]:
        return await self.registry.wait(session_id)

    def cancel(self, session_id: str) -> bool:
        return self.registry.cancel(session_id)

    # -------------------------
    # Background run
    # -------------------------

    async def _run(
        self,
        request: SessionRequest,
        placeholder: Session,
        view: SessionListStore,
        on_settled: Optional[SettledCallback],
    ) -> Optional[Session]:
        sid = placeholder.id
        started = time.time()
        result: Optional[Session] = None
        try:
            result = await self._process(request, placeholder, view)
            logger.info(f"Session processed in {time.time() - started:.2f}s (sid={sid})")
        except asyncio.CancelledError:
            logger.warning(f"Processing cancelled (sid={sid})")
            result = await self._fail(view, sid)
            await self._notify(on_settled, result, sid)
            raise
        except Exception:
            logger.exception(f"Processing failed (sid={sid})")
            result = await self._fail(view, sid)
        await self._notify(on_settled, result, sid)
        return result

    async def _process(
        self,
        request: SessionRequest,
        placeholder: Session,
        view: SessionListStore,
    ) -> Optional[Session]:
        sid = placeholder.id
        template = request.template

        transcript = await self.gateway.transcribe(request.audio.data, request.audio.mime_type)
        logger.info(f"Transcribed {len(transcript)} chars (sid={sid})")

        name = request.patient_name.strip()
        if not name:
            name = await self._infer_title(transcript, sid)
        gender = request.patient_gender.strip() or UNKNOWN_GENDER

        note = await self.gateway.draft_document(
            transcript,
            request.context,
            template.system_prompt,
            patient_info_summary(name, gender),
            request.practice_info,
        )
        tasks = await extract_tasks_safely(self.gateway, note, sid)
        document = Document(title=template.name, type=template.name, content=note)

        await self._reconcile(
            sid,
            placeholder.patient_id,
            name=name,
            gender=gender,
            transcript=transcript,
            context=request.context,
            document=document,
            tasks=tasks,
        )

        try:
            return view.update(
                sid,
                patient_name=name,
                patient_gender=gender,
                transcript=transcript,
                documents=[document],
                tasks=tasks,
                status=SessionStatus.COMPLETED,
            )
        except SessionNotFound:
            logger.info(f"Session removed while processing; result dropped (sid={sid})")
            return None

    async def _infer_title(self, transcript: str, sid: str) -> str:
        try:
            title = await self.gateway.infer_title(transcript)
        except Exception as e:
            logger.warning(f"Title inference failed; using fallback (sid={sid}): {e}")
            return FALLBACK_TITLE
        return title.strip() or FALLBACK_TITLE

    async def _reconcile(
        self,
        sid: str,
        patient_id: Optional[str],
        *,
        name: str,
        gender: str,
        transcript: str,
        context: str,
        document: Document,
        tasks: List[Task],
    ) -> None:
        store = self.store
        await persist_best_effort(
            "session",
            sid,
            store.update_session_record,
            sid,
            {
                "title": name,
                "patient_name": name,
                "patient_gender": gender,
                "status": SessionStatus.COMPLETED.value,
            },
        )
        if patient_id:
            await persist_best_effort(
                "patient", sid, store.update_patient, patient_id, {"full_name": name, "gender": gender}
            )
        await persist_best_effort("transcript", sid, store.upsert_session_transcript, sid, transcript)
        await persist_best_effort("context", sid, store.upsert_session_context, sid, context)
        await persist_best_effort("notes", sid, store.upsert_session_notes, sid, [document])
        await persist_best_effort("tasks", sid, store.replace_session_tasks, sid, tasks)

    async def _fail(self, view: SessionListStore, sid: str) -> Optional[Session]:
        try:
            failed = view.update(sid, status=SessionStatus.DRAFT, transcript=FAILURE_TRANSCRIPT)
        except SessionNotFound:
            return None
        except InvalidStatusTransition as e:
            logger.error(f"Could not mark session as draft (sid={sid}): {e}")
            return view.find(sid)
        await persist_best_effort(
            "status", sid, self.store.update_session_record, sid, {"status": SessionStatus.DRAFT.value}
        )
        return failed

    async def _notify(self, callback: Optional[SettledCallback], result: Optional[Session], sid: str) -> None:
        if callback is None:
            return
        try:
            out = callback(result)
            if asyncio.iscoroutine(out):
                await out
        except Exception:
            logger.exception(f"on_settled callback failed (sid={sid})")
