from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from threading import Lock as ThreadLock
from typing import Dict, List, Optional

from onechart import config
from onechart.errors import InvalidAudio, RecordingInProgress, RecordingNotFound
from onechart.models import AudioPayload

logger = logging.getLogger("onechart.recording")

DEFAULT_MIME = "audio/webm"

_EXT_MIMES = {
    ".webm": "audio/webm",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".mp4": "audio/mp4",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
}


def mime_for_upload(filename: Optional[str], content_type: Optional[str]) -> str:
    ct = (content_type or "").split(";", 1)[0].strip().lower()
    if ct.startswith("audio/") or ct.startswith("video/"):
        return ct
    ext = os.path.splitext(filename or "")[1].lower()
    return _EXT_MIMES.get(ext, DEFAULT_MIME)


def validate_audio(data: bytes) -> None:
    if not data or len(data) < config.MIN_AUDIO_BYTES:
        raise InvalidAudio("Recording is empty or too short.")
    if len(data) > config.MAX_AUDIO_BYTES:
        raise InvalidAudio("Recording is too large.")


def payload_from_upload(
    data: bytes,
    filename: Optional[str] = None,
    content_type: Optional[str] = None,
) -> AudioPayload:
    """Wrap an uploaded audio file (or a finished recording) for processing."""
    validate_audio(data)
    return AudioPayload(data=data, mime_type=mime_for_upload(filename, content_type))


@dataclass
class _Capture:
    mime_type: str
    started_at: float = field(default_factory=time.time)
    chunks: List[bytes] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(len(c) for c in self.chunks)


class RecordingController:
    """
    Collects streamed audio chunks per session until the clinician stops or
    cancels. Holds at most one capture per session id.
    """

    def __init__(self) -> None:
        self._lock = ThreadLock()
        self._captures: Dict[str, _Capture] = {}

    def start(self, session_id: str, mime_type: str = DEFAULT_MIME) -> None:
        with self._lock:
            if session_id in self._captures:
                raise RecordingInProgress(session_id)
            self._captures[session_id] = _Capture(mime_type=mime_type or DEFAULT_MIME)
        logger.info("Recording started (sid=%s)", session_id)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._captures

    def append(self, session_id: str, chunk: bytes) -> int:
        with self._lock:
            capture = self._captures.get(session_id)
            if capture is None:
                raise RecordingNotFound(session_id)
            if chunk:
                if capture.size + len(chunk) > config.MAX_AUDIO_BYTES:
                    raise InvalidAudio("Recording is too large.")
                capture.chunks.append(chunk)
            return capture.size

    def stop(self, session_id: str) -> AudioPayload:
        with self._lock:
            capture = self._captures.pop(session_id, None)
        if capture is None:
            raise RecordingNotFound(session_id)
        data = b"".join(capture.chunks)
        logger.info(
            "Recording stopped (sid=%s) bytes=%s duration=%.1fs",
            session_id,
            len(data),
            time.time() - capture.started_at,
        )
        validate_audio(data)
        return AudioPayload(data=data, mime_type=capture.mime_type)

    def cancel(self, session_id: str) -> bool:
        with self._lock:
            capture = self._captures.pop(session_id, None)
        if capture is not None:
            logger.info("Recording cancelled (sid=%s)", session_id)
        return capture is not None
