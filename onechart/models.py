from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from onechart.errors import InvalidStatusTransition


def _now_utc() -> datetime:
    # Use timezone-aware UTC to avoid subtle comparisons/serialization issues.
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =========================
# Shared strict base model (Pydantic v2)
# =========================

class StrictBaseModel(BaseModel):
    """
    Strict, assignment-validating base model (Pydantic v2).
    - extra fields are forbidden (schema discipline)
    - assignment is validated (catches subtle runtime drift)
    """
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


# =========================
# Session lifecycle
# =========================

class SessionStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    DRAFT = "draft"


_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.PROCESSING: frozenset({SessionStatus.COMPLETED, SessionStatus.DRAFT}),
    SessionStatus.COMPLETED: frozenset({SessionStatus.PROCESSING}),
    # A draft is finalised by hand (edit + save); it never re-enters processing.
    SessionStatus.DRAFT: frozenset({SessionStatus.COMPLETED}),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    current = SessionStatus(current)
    target = SessionStatus(target)
    return current == target or target in _TRANSITIONS[current]


def transition(current: SessionStatus, target: SessionStatus) -> SessionStatus:
    """
    Return the target status, or raise InvalidStatusTransition.
    Staying in the same status is always allowed.
    """
    if not can_transition(current, target):
        raise InvalidStatusTransition(SessionStatus(current).value, SessionStatus(target).value)
    return SessionStatus(target)


# =========================
# Session content
# =========================

TASK_TAGS = ("Prescription", "Referral", "Lab/Imaging", "Admin", "Follow-up")
DEFAULT_TASK_TAG = "Admin"
UNKNOWN_GENDER = "Unknown"

TaskStatus = Literal["pending", "completed"]


class Document(StrictBaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    type: str
    content: str = ""
    created_at: datetime = Field(default_factory=_now_utc)


class Task(StrictBaseModel):
    id: str
    content: str
    tag: str = DEFAULT_TASK_TAG
    status: TaskStatus = "pending"
    session_id: str


class Addendum(StrictBaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=_now_utc)
    content: str


class Session(StrictBaseModel):
    id: str
    patient_id: Optional[str] = None
    user_id: Optional[str] = None

    patient_name: str
    # Free text on purpose; "Unknown" is a valid value.
    patient_gender: str = UNKNOWN_GENDER
    date: datetime = Field(default_factory=_now_utc)
    template_id: str = ""
    template_name: str = "Untitled"

    transcript: str = ""
    documents: List[Document] = Field(default_factory=list)
    context: str = ""
    status: SessionStatus = SessionStatus.DRAFT
    tasks: List[Task] = Field(default_factory=list)
    addendums: List[Addendum] = Field(default_factory=list)

    def document(self, document_id: Optional[str]) -> Optional[Document]:
        for doc in self.documents:
            if doc.id == document_id:
                return doc
        return None

    def primary_document(self) -> Optional[Document]:
        return self.documents[0] if self.documents else None


# =========================
# Templates / profiles / chat
# =========================

class Template(StrictBaseModel):
    id: str
    name: str
    description: str = ""
    system_prompt: str


class Profile(StrictBaseModel):
    id: str
    full_name: str = ""
    email: str = ""
    practice: str = ""
    speciality: str = ""
    phone_number: str = ""
    practice_name: str = ""

    # Settings screen
    practice_info: str = ""
    auto_delete_days: Optional[int] = None


class ChatMessage(StrictBaseModel):
    role: Literal["user", "model"]
    content: str
    timestamp: datetime = Field(default_factory=_now_utc)


class AudioPayload(StrictBaseModel):
    data: bytes
    mime_type: str = "audio/webm"

    @property
    def size(self) -> int:
        return len(self.data)
