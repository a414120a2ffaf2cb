import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from onechart.errors import AIGatewayError, PersistenceError
from onechart.models import AudioPayload
from onechart.session_store import SqliteSessionStore


class FakeGateway:
    """In-process stand-in for the hosted model. Records every call."""

    def __init__(self) -> None:
        self.transcript = "Patient reports a dry cough for three days."
        self.note = "S: Dry cough x3 days.\nO: Afebrile.\nA: Viral URTI.\nP: Chest x-ray if no better."
        self.title = "Cough Follow Up"
        self.tasks: Any = [
            {"content": "Order chest x-ray", "tag": "Lab/Imaging"},
            {"content": "Book review in one week", "tag": "Follow-up"},
        ]
        self.chat_reply = "Consider adding a differential."
        self.fail: Set[str] = set()
        self.calls: List[Dict[str, Any]] = []
        # Set inside the running loop when a test needs to hold the pipeline mid-flight.
        self.gate: Optional[asyncio.Event] = None

    def _check(self, op: str) -> None:
        if op in self.fail:
            raise AIGatewayError(op, "simulated outage")

    async def transcribe(self, audio_bytes: bytes, mime_type: str) -> str:
        self.calls.append({"op": "transcribe", "bytes": len(audio_bytes), "mime_type": mime_type})
        if self.gate is not None:
            await self.gate.wait()
        self._check("transcribe")
        return self.transcript

    async def draft_document(self, transcript, context, instruction_text, patient_info, practice_info=""):
        self.calls.append(
            {
                "op": "draft_document",
                "transcript": transcript,
                "context": context,
                "instruction_text": instruction_text,
                "patient_info": patient_info,
                "practice_info": practice_info,
            }
        )
        self._check("draft_document")
        return self.note

    async def extract_tasks(self, document_text: str):
        self.calls.append({"op": "extract_tasks", "document_text": document_text})
        self._check("extract_tasks")
        return self.tasks

    async def infer_title(self, transcript: str) -> str:
        self.calls.append({"op": "infer_title", "transcript": transcript})
        self._check("infer_title")
        return self.title

    async def chat(self, history, current_note, current_transcript) -> str:
        self.calls.append({"op": "chat", "history": list(history), "note": current_note})
        self._check("chat")
        return self.chat_reply

    def ops(self) -> List[str]:
        return [c["op"] for c in self.calls]


class FlakyStore(SqliteSessionStore):
    """SQLite store whose named methods can be told to fail."""

    def __init__(self, db_path: str) -> None:
        super().__init__(db_path)
        self.fail: Set[str] = set()

    def __getattribute__(self, name: str):
        failing = object.__getattribute__(self, "__dict__").get("fail", ())
        if not name.startswith("_") and name in failing:
            def _boom(*args, **kwargs):
                raise PersistenceError(f"{name} unavailable")
            return _boom
        return object.__getattribute__(self, name)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(tmp_path):
    return FlakyStore(str(tmp_path / "onechart.sqlite"))


@pytest.fixture
def audio():
    return AudioPayload(data=b"\x1aE\xdf\xa3" + b"\x00" * 4000, mime_type="audio/webm")
