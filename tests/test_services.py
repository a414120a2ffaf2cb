import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from onechart import services as services_module
from onechart.errors import (
    GenerationFailed,
    InvalidStatusTransition,
    PipelineAlreadyRunning,
    SessionNotFound,
    TaskNotFound,
)
from onechart.models import Profile, SessionStatus
from onechart.resume import RESUME_DELIMITER
from onechart.pipeline import FAILURE_TRANSCRIPT
from onechart.services import CHAT_EMPTY_REPLY, CHAT_UNAVAILABLE, ScribeService


def _service(gateway, store):
    return ScribeService(gateway, store)


async def _completed(svc, audio, **kwargs):
    kwargs.setdefault("patient_name", "Jane Roe")
    kwargs.setdefault("patient_gender", "Female")
    kwargs.setdefault("context", "Hx asthma")
    placeholder = await svc.start_session("u1", audio, **kwargs)
    return await svc.pipeline.wait(placeholder.id)


def test_start_session_uses_profile_practice_info(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        await svc.save_profile(Profile(id="u1", practice_info="Riverside Family Clinic"))
        session = await _completed(svc, audio, template_id="t2")
        return svc, session

    svc, session = asyncio.run(scenario())
    draft = next(c for c in gateway.calls if c["op"] == "draft_document")
    assert draft["practice_info"] == "Riverside Family Clinic"
    assert session.template_name == "Progress Note"
    assert session.status == SessionStatus.COMPLETED


def test_load_sessions_reads_store_once(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        fresh = _service(gateway, store)
        loaded = await fresh.load_sessions("u1")
        return session, loaded, await fresh.list_sessions("u1")

    session, loaded, listed = asyncio.run(scenario())
    assert [s.id for s in loaded] == [session.id]
    assert loaded[0].documents == session.documents
    assert listed == loaded


def test_retention_purges_old_sessions(gateway, store, audio, monkeypatch):
    async def scenario():
        svc = _service(gateway, store)
        await _completed(svc, audio)
        await svc.save_profile(Profile(id="u1", auto_delete_days=30))
        monkeypatch.setattr(
            services_module, "_utc_now", lambda: datetime.now(timezone.utc) + timedelta(days=31)
        )
        return await svc.load_sessions("u1", refresh=True)

    assert asyncio.run(scenario()) == []
    assert store.fetch_sessions_for_user("u1") == []


def test_update_session_persists_edits(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        updated = await svc.update_session("u1", session.id, {"patient_name": "Janet Roe", "context": "new"})
        return session, updated

    session, updated = asyncio.run(scenario())
    assert updated.patient_name == "Janet Roe"
    stored = store.fetch_sessions_for_user("u1")[0]
    assert stored.patient_name == "Janet Roe"
    assert stored.context == "new"


def test_update_session_rejects_unknown_fields(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        with pytest.raises(ValueError):
            await svc.update_session("u1", session.id, {"user_id": "someone-else"})

    asyncio.run(scenario())


def test_gender_change_with_regenerate_redrafts(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        gateway.note = "Redrafted for male patient."
        updated = await svc.update_session("u1", session.id, {"patient_gender": "Male"}, regenerate=True)
        return session, updated

    session, updated = asyncio.run(scenario())
    draft = [c for c in gateway.calls if c["op"] == "draft_document"][-1]
    assert draft["patient_info"] == "Jane Roe (Male)"
    assert updated.documents[0].content == "Redrafted for male patient."
    assert updated.transcript == session.transcript
    assert updated.context == session.context
    assert updated.tasks == session.tasks
    assert updated.status == SessionStatus.COMPLETED


def test_regenerate_failure_keeps_content(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        gateway.fail.add("draft_document")
        with pytest.raises(GenerationFailed):
            await svc.regenerate_document("u1", session.id, session.documents[0].id)
        return session, await svc.get_session("u1", session.id)

    before, after = asyncio.run(scenario())
    assert after.documents == before.documents


def test_documents_on_demand_and_from_chat(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        gateway.note = "Dear colleague..."
        with_letter = await svc.create_document("u1", session.id, "Referral Letter")
        with_chat = await svc.add_document_from_chat("u1", session.id, "Patient handout text")
        doc_id = with_chat.documents[0].id
        saved = await svc.save_document("u1", session.id, doc_id, "Edited note")
        appended = await svc.append_to_document("u1", session.id, doc_id, "Addendum line")
        return with_letter, with_chat, saved, appended

    with_letter, with_chat, saved, appended = asyncio.run(scenario())
    draft = [c for c in gateway.calls if c["op"] == "draft_document"][-1]
    assert draft["instruction_text"] == "Create a Referral Letter."
    assert [d.title for d in with_letter.documents] == ["SOAP Note", "Referral Letter"]
    chat_doc = with_chat.documents[-1]
    assert (chat_doc.title, chat_doc.type, chat_doc.content) == ("New Document", "Supplemental", "Patient handout text")
    assert saved.documents[0].content == "Edited note"
    assert appended.documents[0].content == "Edited note\n\nAddendum line"

    stored = store.fetch_sessions_for_user("u1")[0]
    assert len(stored.documents) == 3
    assert stored.documents[0].content == "Edited note\n\nAddendum line"


def test_task_status_and_listing(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        first, second = session.tasks
        await svc.set_task_status("u1", session.id, first.id, "completed")
        pending = await svc.list_tasks("u1", "pending")
        done = await svc.list_tasks("u1", "completed")
        after_delete = await svc.delete_task("u1", session.id, second.id)
        with pytest.raises(TaskNotFound):
            await svc.delete_task("u1", session.id, "missing")
        return first, second, pending, done, after_delete

    first, second, pending, done, after_delete = asyncio.run(scenario())
    assert [e.task.id for e in pending] == [second.id]
    assert [e.task.id for e in done] == [first.id]
    assert done[0].patient_name == "Jane Roe"
    assert [t.id for t in after_delete.tasks] == [first.id]
    stored = store.fetch_sessions_for_user("u1")[0]
    assert [(t.id, t.status) for t in stored.tasks] == [(first.id, "completed")]


def test_chat_fallbacks(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        history = [{"role": "user", "content": "Summarise the plan"}]
        ok = await svc.chat("u1", session.id, history)
        gateway.chat_reply = ""
        empty = await svc.chat("u1", session.id, history)
        gateway.fail.add("chat")
        down = await svc.chat("u1", session.id, history)
        return session, ok, empty, down

    session, ok, empty, down = asyncio.run(scenario())
    assert ok == "Consider adding a differential."
    assert empty == CHAT_EMPTY_REPLY
    assert down == CHAT_UNAVAILABLE
    chat_call = next(c for c in gateway.calls if c["op"] == "chat")
    assert chat_call["note"] == session.documents[0].content


def test_delete_session(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        assert await svc.delete_session("u1", session.id)
        with pytest.raises(SessionNotFound):
            await svc.get_session("u1", session.id)

    asyncio.run(scenario())
    assert store.fetch_sessions_for_user("u1") == []


def test_finish_resume_through_service(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio, template_id="t3")
        gateway.transcript = "Discharged home."
        await svc.start_resume_recording("u1", session.id)
        await svc.append_resume_audio("u1", session.id, b"\x00" * 1500)
        return session, await svc.finish_resume("u1", session.id)

    before, after = asyncio.run(scenario())
    assert after.transcript.endswith(RESUME_DELIMITER + "Discharged home.")
    draft = [c for c in gateway.calls if c["op"] == "draft_document"][-1]
    assert draft["instruction_text"].startswith("Create a Discharge Summary.")


def test_sessions_scoped_per_user(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        with pytest.raises(SessionNotFound):
            await svc.get_session("u2", session.id)

    asyncio.run(scenario())


async def _until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline, "condition never reached"
        await asyncio.sleep(0.01)


def test_pipeline_and_resume_share_the_service_registry(gateway, store):
    svc = _service(gateway, store)
    assert svc.pipeline.registry is svc.registry
    assert svc.resume.registry is svc.registry


def test_aclose_settles_in_flight_session_to_draft(gateway, store, audio):
    async def scenario():
        gateway.gate = asyncio.Event()
        svc = _service(gateway, store)
        placeholder = await svc.start_session("u1", audio, patient_name="Jane Roe")
        await _until(lambda: "transcribe" in gateway.ops())
        assert len(svc.registry) == 1
        await svc.aclose()
        return svc, placeholder

    svc, placeholder = asyncio.run(scenario())
    assert not svc.registry.is_running(placeholder.id)
    local = svc.view("u1").get(placeholder.id)
    assert local.status == SessionStatus.DRAFT
    assert local.transcript == FAILURE_TRANSCRIPT
    assert store.fetch_sessions_for_user("u1")[0].status == SessionStatus.DRAFT


def test_delete_session_cancels_its_pipeline(gateway, store, audio):
    async def scenario():
        gateway.gate = asyncio.Event()
        svc = _service(gateway, store)
        placeholder = await svc.start_session("u1", audio, patient_name="Jane Roe")
        await _until(lambda: "transcribe" in gateway.ops())
        assert await svc.delete_session("u1", placeholder.id)
        await svc.registry.drain()
        return svc, placeholder

    svc, placeholder = asyncio.run(scenario())
    assert "draft_document" not in gateway.ops()
    assert svc.view("u1").find(placeholder.id) is None
    assert store.fetch_sessions_for_user("u1") == []


def test_status_edit_cannot_enter_processing(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        session = await _completed(svc, audio)
        with pytest.raises(InvalidStatusTransition):
            await svc.update_session("u1", session.id, {"status": "processing"})
        return svc, session

    svc, session = asyncio.run(scenario())
    assert svc.view("u1").get(session.id).status == SessionStatus.COMPLETED
    assert store.fetch_sessions_for_user("u1")[0].status == SessionStatus.COMPLETED


def test_status_edit_refused_while_processing(gateway, store, audio):
    async def scenario():
        gateway.gate = asyncio.Event()
        svc = _service(gateway, store)
        placeholder = await svc.start_session("u1", audio, patient_name="Jane Roe")
        with pytest.raises(PipelineAlreadyRunning):
            await svc.update_session("u1", placeholder.id, {"status": "draft"})
        gateway.gate.set()
        return await svc.pipeline.wait(placeholder.id)

    assert asyncio.run(scenario()).status == SessionStatus.COMPLETED


def test_refresh_keeps_completed_session_when_status_write_failed(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        store.fail.add("update_session_record")
        session = await _completed(svc, audio)
        refreshed = await svc.load_sessions("u1", refresh=True)
        return session, refreshed

    session, refreshed = asyncio.run(scenario())
    assert session.status == SessionStatus.COMPLETED
    assert [(s.id, s.status) for s in refreshed] == [(session.id, SessionStatus.COMPLETED)]
    assert refreshed[0].documents == session.documents


def test_stranded_processing_row_loads_as_draft(gateway, store):
    _, row = store.create_session_with_patient(
        user_id="u1",
        patient_name="Jane Roe",
        patient_gender="Female",
        template_id="t1",
        template_name="SOAP Note",
        title="Jane Roe",
        status="processing",
    )

    loaded = asyncio.run(_service(gateway, store).load_sessions("u1"))
    assert [(s.id, s.status) for s in loaded] == [(row["id"], SessionStatus.DRAFT)]
    assert loaded[0].transcript == FAILURE_TRANSCRIPT
    assert store.fetch_sessions_for_user("u1")[0].status == SessionStatus.DRAFT


def test_templates_are_private_per_user(gateway, store, audio):
    async def scenario():
        svc = _service(gateway, store)
        mine = svc.templates_for("u1").add("Sports Medicine", "Focus on injury mechanism.")
        assert svc.templates_for("u2").delete("t1")
        session = await _completed(svc, audio, template_id=mine.id)
        return svc, mine, session

    svc, mine, session = asyncio.run(scenario())
    assert session.template_name == "Sports Medicine"
    assert svc.templates_for("u1").get("t1") is not None
    assert svc.templates_for("u2").get(mine.id) is None
    assert [t.id for t in svc.templates_for("u3").list()] == ["t1", "t2", "t3", "t4"]
