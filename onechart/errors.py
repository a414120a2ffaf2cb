from __future__ import annotations

from typing import Optional


class OneChartError(Exception):
    """Base class for domain errors raised by the scribe backend."""


class InvalidStatusTransition(OneChartError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move session from '{current}' to '{target}'.")
        self.current = current
        self.target = target


class SessionNotFound(OneChartError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class DocumentNotFound(OneChartError):
    def __init__(self, session_id: str, document_id: str):
        super().__init__(f"Document {document_id} not found in session {session_id}")
        self.session_id = session_id
        self.document_id = document_id


class TaskNotFound(OneChartError):
    def __init__(self, session_id: str, task_id: str):
        super().__init__(f"Task {task_id} not found in session {session_id}")
        self.session_id = session_id
        self.task_id = task_id


class TemplateNotFound(OneChartError):
    pass


class PipelineAlreadyRunning(OneChartError):
    def __init__(self, session_id: str):
        super().__init__(f"Processing already in flight for session {session_id}")
        self.session_id = session_id


class RecordingInProgress(OneChartError):
    def __init__(self, session_id: str):
        super().__init__(f"A recording is already active for session {session_id}")
        self.session_id = session_id


class RecordingNotFound(OneChartError):
    def __init__(self, session_id: str):
        super().__init__(f"No active recording for session {session_id}")
        self.session_id = session_id


class InvalidAudio(OneChartError):
    pass


class ResumeInProgress(OneChartError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already being updated.")
        self.session_id = session_id


class SessionNotResumable(OneChartError):
    def __init__(self, session_id: str, status: str):
        super().__init__(f"Only completed sessions can be resumed (session {session_id} is '{status}').")
        self.session_id = session_id
        self.status = status


class ResumeFailed(OneChartError):
    """
    Raised when a resumed recording could not be merged into the session.
    The session keeps its previous transcript, documents and tasks.
    """

    def __init__(self, session_id: str, cause: Optional[BaseException] = None):
        super().__init__("Failed to update session. Restoring previous state.")
        self.session_id = session_id
        self.cause = cause


class GenerationFailed(OneChartError):
    pass


class AIGatewayError(OneChartError):
    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class PersistenceError(OneChartError):
    pass


class UserExists(OneChartError):
    def __init__(self, field: str):
        super().__init__(f"{field.capitalize()} already in use.")
        self.field = field
