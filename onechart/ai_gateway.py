from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from openai import AsyncOpenAI

from onechart import config
from onechart.errors import AIGatewayError
from onechart.models import TASK_TAGS, ChatMessage
from onechart.prompts import (
    CHAT_SYSTEM,
    DRAFT_SYSTEM,
    DRAFT_USER,
    TASKS_SYSTEM,
    TASKS_USER,
    TITLE_USER,
    TRANSCRIBE_PROMPT,
)

logger = logging.getLogger("onechart.ai")

TITLE_MAX_WORDS = 5

# Extensions accepted by the OpenAI transcription endpoint, keyed by MIME type.
_MIME_EXTENSIONS = {
    "audio/webm": ".webm",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/wave": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/m4a": ".m4a",
    "video/webm": ".webm",
    "video/mp4": ".mp4",
}

HistoryItem = Union[ChatMessage, Dict[str, str]]


def extension_for_mime(mime_type: str) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_EXTENSIONS.get(base, ".webm")


def clean_title(raw: str) -> str:
    t = re.sub(r"['\"]+", "", raw or "").strip()
    t = t.splitlines()[0].strip() if t else ""
    words = t.split()
    return " ".join(words[:TITLE_MAX_WORDS])


def parse_task_payload(raw: str) -> Any:
    """
    Decode the extraction reply. A bare array or {"tasks": [...]} yields the
    list; any other valid JSON is handed back unchanged for the caller to reject.
    """
    text = (raw or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text).strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AIGatewayError("extract_tasks", f"invalid JSON ({exc.msg})") from exc
    if isinstance(data, dict) and "tasks" in data:
        return data["tasks"]
    return data


def _history_messages(history: Iterable[HistoryItem]) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = []
    for item in history:
        if isinstance(item, ChatMessage):
            role, content = item.role, item.content
        else:
            role, content = item.get("role", "user"), item.get("content", "")
        messages.append({
            "role": "assistant" if role == "model" else "user",
            "content": content or "",
        })
    return messages


class AIGateway:
    """
    Stateless request/response access to the hosted model.

    Every method raises AIGatewayError on SDK failure or unusable output;
    fallbacks are the caller's business.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        transcribe_model: str = config.TRANSCRIBE_MODEL,
        draft_model: str = config.DRAFT_MODEL,
        task_model: str = config.TASK_MODEL,
        title_model: str = config.TITLE_MODEL,
        chat_model: str = config.CHAT_MODEL,
        temperature: float = config.DRAFT_TEMPERATURE,
    ) -> None:
        self._client = client
        self.transcribe_model = transcribe_model
        self.draft_model = draft_model
        self.task_model = task_model
        self.title_model = title_model
        self.chat_model = chat_model
        self.temperature = temperature

    @property
    def client(self) -> AsyncOpenAI:
        # Created on first use so importing the app does not require a key.
        if self._client is None:
            self._client = AsyncOpenAI(timeout=config.AI_TIMEOUT_SECONDS)
        return self._client

    async def _complete(
        self,
        operation: str,
        model: str,
        messages: List[Dict[str, str]],
        **kwargs: Any,
    ) -> str:
        start = time.time()
        try:
            resp = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                **kwargs,
            )
        except Exception as exc:
            logger.warning("ai.%s model=%s ok=False error=%s", operation, model, exc)
            raise AIGatewayError(operation, str(exc)) from exc
        text = ""
        if resp.choices:
            text = (resp.choices[0].message.content or "").strip()
        logger.info(
            "ai.%s model=%s ok=True chars=%s elapsed=%.2fs",
            operation,
            model,
            len(text),
            time.time() - start,
        )
        return text

    async def transcribe(self, audio_bytes: bytes, mime_type: str) -> str:
        filename = "audio" + extension_for_mime(mime_type)
        start = time.time()
        try:
            tr = await self.client.audio.transcriptions.create(
                model=self.transcribe_model,
                file=(filename, audio_bytes, mime_type),
                prompt=TRANSCRIBE_PROMPT,
                response_format="text",
            )
        except Exception as exc:
            logger.warning("ai.transcribe model=%s ok=False error=%s", self.transcribe_model, exc)
            raise AIGatewayError("transcribe", str(exc)) from exc

        if isinstance(tr, str):
            text = tr
        else:
            text = getattr(tr, "text", "") or ""
        text = text.strip()
        logger.info(
            "ai.transcribe model=%s bytes=%s chars=%s elapsed=%.2fs",
            self.transcribe_model,
            len(audio_bytes),
            len(text),
            time.time() - start,
        )
        if not text:
            raise AIGatewayError("transcribe", "empty transcript")
        return text

    async def draft_document(
        self,
        transcript: str,
        context: str,
        instruction_text: str,
        patient_info: str,
        practice_info: str = "",
    ) -> str:
        prompt = DRAFT_USER.format(
            practice_info=practice_info or "",
            patient_info=patient_info,
            context=context or "",
            transcript=transcript,
            instructions=instruction_text,
        )
        text = await self._complete(
            "draft_document",
            self.draft_model,
            [
                {"role": "system", "content": DRAFT_SYSTEM},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
        )
        if not text:
            raise AIGatewayError("draft_document", "empty document")
        return text

    async def extract_tasks(self, document_text: str) -> Any:
        raw = await self._complete(
            "extract_tasks",
            self.task_model,
            [
                {"role": "system", "content": TASKS_SYSTEM},
                {
                    "role": "user",
                    "content": TASKS_USER.format(
                        tags=", ".join(f"'{t}'" for t in TASK_TAGS),
                        note=document_text,
                    ),
                },
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
        return parse_task_payload(raw)

    async def infer_title(self, transcript: str) -> str:
        raw = await self._complete(
            "infer_title",
            self.title_model,
            [{"role": "user", "content": TITLE_USER.format(transcript=transcript)}],
            temperature=0,
        )
        return clean_title(raw)

    async def chat(
        self,
        history: Iterable[HistoryItem],
        current_note: str,
        current_transcript: str,
    ) -> str:
        messages = [{
            "role": "system",
            "content": CHAT_SYSTEM.format(note=current_note or "", transcript=current_transcript or ""),
        }]
        messages.extend(_history_messages(history))
        return await self._complete("chat", self.chat_model, messages)
