from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock as ThreadLock
from typing import Any, Dict, Iterator, List, Optional, Tuple
from uuid import uuid4

from onechart import config
from onechart.errors import PersistenceError, UserExists
from onechart.models import Document, Profile, Session, SessionStatus, Task, UNKNOWN_GENDER

logger = logging.getLogger("onechart.store")

_SESSION_COLUMNS = {
    "patient_name",
    "patient_gender",
    "title",
    "status",
    "template_id",
    "template_name",
}
_PATIENT_COLUMNS = {"full_name", "gender"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime] = None) -> str:
    return (dt or _utc_now()).isoformat()


def _parse_dt(value: Optional[str]) -> datetime:
    if not value:
        return _utc_now()
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return _utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS patients (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        full_name TEXT,
        gender TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        patient_id TEXT REFERENCES patients(id),
        patient_name TEXT,
        patient_gender TEXT,
        title TEXT,
        status TEXT NOT NULL,
        template_id TEXT,
        template_name TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_created ON sessions(user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS session_notes (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        title TEXT,
        note_type TEXT,
        content TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_transcripts (
        session_id TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
        transcript TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_context (
        session_id TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
        context TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_tasks (
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        id TEXT NOT NULL,
        position INTEGER NOT NULL,
        content TEXT NOT NULL,
        tag TEXT,
        status TEXT NOT NULL,
        PRIMARY KEY (session_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        full_name TEXT,
        email TEXT,
        practice TEXT,
        speciality TEXT,
        phone_number TEXT,
        practice_name TEXT,
        practice_info TEXT,
        auto_delete_days INTEGER,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_tokens (
        token TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expires_at INTEGER NOT NULL
    )
    """,
)


def _map_session_row(
    row: sqlite3.Row,
    notes: List[sqlite3.Row],
    transcript: Optional[str],
    context: Optional[str],
    tasks: List[sqlite3.Row],
) -> Session:
    created_at = row["created_at"]
    status = row["status"] or SessionStatus.DRAFT.value
    try:
        status_value = SessionStatus(status)
    except ValueError:
        status_value = SessionStatus.DRAFT
    return Session(
        id=row["id"],
        patient_id=row["patient_id"] or None,
        user_id=row["user_id"] or None,
        patient_name=row["patient_name"] or row["patient_full_name"] or "Unknown",
        patient_gender=row["patient_gender"] or row["patient_gender_fallback"] or UNKNOWN_GENDER,
        date=_parse_dt(created_at),
        template_id=row["template_id"] or "",
        template_name=row["template_name"] or "Untitled",
        transcript=transcript or "",
        documents=[
            Document(
                id=n["id"],
                title=n["title"] or n["note_type"] or "Note",
                type=n["note_type"] or "Note",
                content=n["content"] or "",
                created_at=_parse_dt(n["created_at"] or created_at),
            )
            for n in notes
        ],
        context=context or "",
        status=status_value,
        tasks=[
            Task(
                id=t["id"],
                content=t["content"],
                tag=t["tag"] or "Admin",
                status="completed" if t["status"] == "completed" else "pending",
                session_id=row["id"],
            )
            for t in tasks
        ],
    )


class SqliteSessionStore:
    """
    Relational store for sessions and their content (notes, transcript,
    context, tasks), patients, profiles and login accounts.

    Calls are synchronous and each opens its own connection; async callers
    should go through asyncio.to_thread.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DB_PATH
        self._lock = ThreadLock()
        self._schema_ready = False

    # -------------------------
    # Connection plumbing
    # -------------------------

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        for stmt in _SCHEMA:
            conn.execute(stmt)
        conn.commit()
        self._schema_ready = True

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        with self._lock:
            try:
                conn = sqlite3.connect(self.db_path, timeout=30)
            except sqlite3.Error as exc:
                raise PersistenceError(f"Cannot open database {self.db_path}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                self._ensure_schema(conn)
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise PersistenceError(str(exc)) from exc
            finally:
                conn.close()

    # -------------------------
    # Sessions / patients
    # -------------------------

    def create_session_with_patient(
        self,
        *,
        user_id: str,
        patient_name: str,
        patient_gender: str,
        template_id: str,
        template_name: str,
        title: str,
        status: str,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        now = _iso()
        patient = {
            "id": str(uuid4()),
            "user_id": user_id,
            "full_name": patient_name,
            "gender": patient_gender,
            "created_at": now,
        }
        session = {
            "id": str(uuid4()),
            "user_id": user_id,
            "patient_id": patient["id"],
            "patient_name": patient_name,
            "patient_gender": patient_gender,
            "title": title,
            "status": status,
            "template_id": template_id,
            "template_name": template_name,
            "created_at": now,
            "updated_at": now,
        }
        with self._db() as conn:
            conn.execute(
                "INSERT INTO patients (id, user_id, full_name, gender, created_at) VALUES (?, ?, ?, ?, ?)",
                (patient["id"], user_id, patient_name, patient_gender, now),
            )
            conn.execute(
                """
                INSERT INTO sessions (
                    id, user_id, patient_id, patient_name, patient_gender, title,
                    status, template_id, template_name, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                tuple(session[k] for k in (
                    "id", "user_id", "patient_id", "patient_name", "patient_gender", "title",
                    "status", "template_id", "template_name", "created_at", "updated_at",
                )),
            )
        return patient, session

    def update_session_record(self, session_id: str, updates: Dict[str, Any]) -> None:
        fields = {k: v for k, v in updates.items() if k in _SESSION_COLUMNS}
        unknown = set(updates) - _SESSION_COLUMNS
        if unknown:
            raise PersistenceError(f"Unknown session columns: {sorted(unknown)}")
        if not fields:
            return
        if isinstance(fields.get("status"), SessionStatus):
            fields["status"] = fields["status"].value
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._db() as conn:
            conn.execute(
                f"UPDATE sessions SET {assignments}, updated_at = ? WHERE id = ?",
                (*fields.values(), _iso(), session_id),
            )

    def update_patient(self, patient_id: str, updates: Dict[str, Any]) -> None:
        fields = {k: v for k, v in updates.items() if k in _PATIENT_COLUMNS and v is not None}
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._db() as conn:
            conn.execute(
                f"UPDATE patients SET {assignments} WHERE id = ?",
                (*fields.values(), patient_id),
            )

    def upsert_session_transcript(self, session_id: str, transcript: str) -> None:
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO session_transcripts (session_id, transcript, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    transcript = excluded.transcript, updated_at = excluded.updated_at
                """,
                (session_id, transcript, _iso()),
            )

    def upsert_session_context(self, session_id: str, context: str) -> None:
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO session_context (session_id, context, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    context = excluded.context, updated_at = excluded.updated_at
                """,
                (session_id, context, _iso()),
            )

    def upsert_session_notes(self, session_id: str, documents: List[Document]) -> None:
        if not documents:
            return
        rows = [
            (d.id, session_id, d.title, d.type, d.content, _iso(d.created_at))
            for d in documents
        ]
        with self._db() as conn:
            conn.executemany(
                """
                INSERT INTO session_notes (id, session_id, title, note_type, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    note_type = excluded.note_type,
                    content = excluded.content
                """,
                rows,
            )

    def replace_session_tasks(self, session_id: str, tasks: List[Task]) -> None:
        with self._db() as conn:
            conn.execute("DELETE FROM session_tasks WHERE session_id = ?", (session_id,))
            conn.executemany(
                """
                INSERT INTO session_tasks (session_id, id, position, content, tag, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [(session_id, t.id, i, t.content, t.tag, t.status) for i, t in enumerate(tasks)],
            )

    def fetch_sessions_for_user(self, user_id: str) -> List[Session]:
        with self._db() as conn:
            rows = conn.execute(
                """
                SELECT s.*, p.full_name AS patient_full_name, p.gender AS patient_gender_fallback
                FROM sessions s
                LEFT JOIN patients p ON p.id = s.patient_id
                WHERE s.user_id = ?
                ORDER BY s.created_at DESC, s.rowid DESC
                """,
                (user_id,),
            ).fetchall()
            if not rows:
                return []
            ids = [r["id"] for r in rows]
            marks = ",".join("?" for _ in ids)

            notes: Dict[str, List[sqlite3.Row]] = {}
            for n in conn.execute(
                f"SELECT * FROM session_notes WHERE session_id IN ({marks}) ORDER BY created_at, rowid",
                ids,
            ):
                notes.setdefault(n["session_id"], []).append(n)

            transcripts = {
                r["session_id"]: r["transcript"]
                for r in conn.execute(
                    f"SELECT session_id, transcript FROM session_transcripts WHERE session_id IN ({marks})",
                    ids,
                )
            }
            contexts = {
                r["session_id"]: r["context"]
                for r in conn.execute(
                    f"SELECT session_id, context FROM session_context WHERE session_id IN ({marks})",
                    ids,
                )
            }
            tasks: Dict[str, List[sqlite3.Row]] = {}
            for t in conn.execute(
                f"SELECT * FROM session_tasks WHERE session_id IN ({marks}) ORDER BY position",
                ids,
            ):
                tasks.setdefault(t["session_id"], []).append(t)

        return [
            _map_session_row(
                r,
                notes.get(r["id"], []),
                transcripts.get(r["id"]),
                contexts.get(r["id"]),
                tasks.get(r["id"], []),
            )
            for r in rows
        ]

    def delete_session(self, session_id: str) -> None:
        with self._db() as conn:
            self._delete_with_patients(conn, [session_id])

    @staticmethod
    def _delete_with_patients(conn: sqlite3.Connection, session_ids: List[str]) -> None:
        # Each session owns the patient row it was created with.
        marks = ",".join("?" for _ in session_ids)
        patient_ids = [
            r["patient_id"]
            for r in conn.execute(f"SELECT patient_id FROM sessions WHERE id IN ({marks})", session_ids)
            if r["patient_id"]
        ]
        conn.execute(f"DELETE FROM sessions WHERE id IN ({marks})", session_ids)
        conn.executemany("DELETE FROM patients WHERE id = ?", [(p,) for p in patient_ids])

    def delete_sessions_older_than(self, user_id: str, cutoff: datetime) -> List[str]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT id FROM sessions WHERE user_id = ? AND created_at < ?",
                (user_id, _iso(cutoff)),
            ).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                self._delete_with_patients(conn, ids)
        if ids:
            logger.info("Retention purge removed %s sessions (user=%s)", len(ids), user_id)
        return ids

    # -------------------------
    # Profiles
    # -------------------------

    def fetch_profile(self, user_id: str, fallback_email: str = "") -> Profile:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            # First visit: create the empty shell.
            profile = Profile(id=user_id, email=fallback_email)
            self.upsert_profile(profile)
            return profile
        return Profile(
            id=row["id"],
            full_name=row["full_name"] or "",
            email=row["email"] or fallback_email,
            practice=row["practice"] or "",
            speciality=row["speciality"] or "",
            phone_number=row["phone_number"] or "",
            practice_name=row["practice_name"] or "",
            practice_info=row["practice_info"] or "",
            auto_delete_days=row["auto_delete_days"],
        )

    def upsert_profile(self, profile: Profile) -> None:
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO profiles (
                    id, full_name, email, practice, speciality, phone_number,
                    practice_name, practice_info, auto_delete_days, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name = excluded.full_name,
                    email = excluded.email,
                    practice = excluded.practice,
                    speciality = excluded.speciality,
                    phone_number = excluded.phone_number,
                    practice_name = excluded.practice_name,
                    practice_info = excluded.practice_info,
                    auto_delete_days = excluded.auto_delete_days,
                    updated_at = excluded.updated_at
                """,
                (
                    profile.id,
                    profile.full_name,
                    profile.email,
                    profile.practice,
                    profile.speciality,
                    profile.phone_number,
                    profile.practice_name,
                    profile.practice_info,
                    profile.auto_delete_days,
                    _iso(),
                ),
            )

    # -------------------------
    # Accounts
    # -------------------------

    def create_user(self, username: str, email: str, password_hash: str) -> Dict[str, Any]:
        user = {
            "id": str(uuid4()),
            "username": username,
            "email": email,
            "created_at": _iso(),
        }
        with self._db() as conn:
            for field, value in (("username", username), ("email", email)):
                taken = conn.execute(f"SELECT 1 FROM users WHERE {field} = ?", (value,)).fetchone()
                if taken:
                    raise UserExists(field)
            conn.execute(
                "INSERT INTO users (id, username, email, password_hash, created_at) VALUES (?, ?, ?, ?, ?)",
                (user["id"], username, email, password_hash, user["created_at"]),
            )
        return user

    def fetch_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return dict(row) if row else None

    def fetch_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def save_token(self, token: str, user_id: str, expires_at: int) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO auth_tokens (token, user_id, expires_at) VALUES (?, ?, ?)",
                (token, user_id, expires_at),
            )

    def token_user_id(self, token: str, now: int) -> Optional[str]:
        """Owner of a live token. Expired tokens are swept on the way."""
        with self._db() as conn:
            conn.execute("DELETE FROM auth_tokens WHERE expires_at < ?", (now,))
            row = conn.execute("SELECT user_id FROM auth_tokens WHERE token = ?", (token,)).fetchone()
        return row["user_id"] if row else None

    def delete_token(self, token: str) -> None:
        with self._db() as conn:
            conn.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))
