import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from onechart.errors import PersistenceError, UserExists
from onechart.models import Document, Profile, SessionStatus, Task


def _create(store, user_id="u1", name="Processing Session..."):
    return store.create_session_with_patient(
        user_id=user_id,
        patient_name=name,
        patient_gender="Unknown",
        template_id="t1",
        template_name="SOAP Note",
        title=name,
        status=SessionStatus.PROCESSING.value,
    )


def _count(store, table):
    conn = sqlite3.connect(store.db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def test_create_and_fetch_session(store):
    patient, row = _create(store)
    assert row["patient_id"] == patient["id"]

    sessions = store.fetch_sessions_for_user("u1")
    assert [s.id for s in sessions] == [row["id"]]
    s = sessions[0]
    assert s.status == SessionStatus.PROCESSING
    assert s.template_name == "SOAP Note"
    assert s.documents == [] and s.tasks == [] and s.transcript == ""


def test_content_round_trip(store):
    _, row = _create(store)
    sid = row["id"]
    doc = Document(title="SOAP Note", type="SOAP Note", content="Plan: rest.")
    tasks = [
        Task(id=f"{sid}-task-0", content="Order CBC", tag="Lab/Imaging", session_id=sid),
        Task(id=f"{sid}-task-1", content="Refer to ENT", tag="Referral", status="completed", session_id=sid),
    ]
    store.update_session_record(sid, {"patient_name": "Jane Roe", "title": "Jane Roe", "status": "completed"})
    store.upsert_session_transcript(sid, "hello")
    store.upsert_session_context(sid, "prior notes")
    store.upsert_session_notes(sid, [doc])
    store.replace_session_tasks(sid, tasks)

    s = store.fetch_sessions_for_user("u1")[0]
    assert s.patient_name == "Jane Roe"
    assert s.status == SessionStatus.COMPLETED
    assert s.transcript == "hello"
    assert s.context == "prior notes"
    assert [d.id for d in s.documents] == [doc.id]
    assert [t.content for t in s.tasks] == ["Order CBC", "Refer to ENT"]
    assert s.tasks[1].status == "completed"

    # Upserting the same document id replaces its content.
    store.upsert_session_notes(sid, [doc.model_copy(update={"content": "Plan: fluids."})])
    s = store.fetch_sessions_for_user("u1")[0]
    assert len(s.documents) == 1
    assert s.documents[0].content == "Plan: fluids."


def test_sessions_are_scoped_per_user_and_newest_first(store):
    _, first = _create(store, "u1")
    _, second = _create(store, "u1")
    _create(store, "u2")
    ids = [s.id for s in store.fetch_sessions_for_user("u1")]
    assert ids == [second["id"], first["id"]]


def test_unknown_session_column_rejected(store):
    _, row = _create(store)
    with pytest.raises(PersistenceError):
        store.update_session_record(row["id"], {"transcript": "nope"})


def test_delete_cascades_content(store):
    _, row = _create(store)
    store.upsert_session_transcript(row["id"], "hello")
    store.delete_session(row["id"])
    assert store.fetch_sessions_for_user("u1") == []
    assert _count(store, "patients") == 0
    assert _count(store, "session_transcripts") == 0


def test_delete_sessions_older_than(store):
    _, row = _create(store)
    future = datetime.now(timezone.utc) + timedelta(days=1)
    past = datetime.now(timezone.utc) - timedelta(days=1)
    assert store.delete_sessions_older_than("u1", past) == []
    assert store.delete_sessions_older_than("u1", future) == [row["id"]]
    assert store.fetch_sessions_for_user("u1") == []
    assert _count(store, "patients") == 0


def test_profile_shell_created_on_first_fetch(store):
    profile = store.fetch_profile("u1", "doc@example.com")
    assert profile.id == "u1"
    assert profile.email == "doc@example.com"
    assert profile.auto_delete_days is None

    store.upsert_profile(Profile(id="u1", full_name="Dr Who", practice_info="Gallifrey Clinic", auto_delete_days=30))
    again = store.fetch_profile("u1")
    assert again.full_name == "Dr Who"
    assert again.practice_info == "Gallifrey Clinic"
    assert again.auto_delete_days == 30


def test_delete_keeps_other_sessions_patients(store):
    _, first = _create(store)
    _, second = _create(store)
    store.delete_session(first["id"])
    assert [s.id for s in store.fetch_sessions_for_user("u1")] == [second["id"]]
    assert _count(store, "patients") == 1


def test_user_accounts(store):
    user = store.create_user("drjane", "jane@example.com", "pbkdf2_sha256$1$00$00")
    assert store.fetch_user(user["id"])["username"] == "drjane"
    assert store.fetch_user_by_username("drjane")["password_hash"] == "pbkdf2_sha256$1$00$00"
    assert store.fetch_user_by_username("nobody") is None

    with pytest.raises(UserExists) as exc:
        store.create_user("drjane", "other@example.com", "x")
    assert exc.value.field == "username"
    with pytest.raises(UserExists) as exc:
        store.create_user("drjohn", "jane@example.com", "x")
    assert exc.value.field == "email"
    assert _count(store, "users") == 1


def test_tokens_expire_and_can_be_revoked(store):
    user = store.create_user("drjane", "jane@example.com", "x")
    store.save_token("live", user["id"], expires_at=2000)
    store.save_token("stale", user["id"], expires_at=500)
    assert store.token_user_id("live", now=1000) == user["id"]
    assert store.token_user_id("stale", now=1000) is None
    assert _count(store, "auth_tokens") == 1

    store.delete_token("live")
    assert store.token_user_id("live", now=1000) is None
