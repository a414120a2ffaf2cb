from __future__ import annotations

import os


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = _getenv_str("ONECHART_DATA_DIR", os.path.join(PROJECT_ROOT, "data"))

# =========================
# Storage
# =========================
DB_PATH = _getenv_str("ONECHART_DB_PATH", os.path.join(DATA_DIR, "onechart.sqlite"))

# =========================
# Model selection (OpenAI reads OPENAI_API_KEY itself)
# =========================
TRANSCRIBE_MODEL = _getenv_str("ONECHART_TRANSCRIBE_MODEL", "gpt-4o-transcribe")
DRAFT_MODEL = _getenv_str("ONECHART_DRAFT_MODEL", "gpt-4o-mini")
TASK_MODEL = _getenv_str("ONECHART_TASK_MODEL", DRAFT_MODEL)
TITLE_MODEL = _getenv_str("ONECHART_TITLE_MODEL", DRAFT_MODEL)
CHAT_MODEL = _getenv_str("ONECHART_CHAT_MODEL", DRAFT_MODEL)
DRAFT_TEMPERATURE = _getenv_float("ONECHART_DRAFT_TEMPERATURE", 0.2)
AI_TIMEOUT_SECONDS = _getenv_float("ONECHART_AI_TIMEOUT_SECONDS", 120.0)

# =========================
# Audio limits
# =========================
MIN_AUDIO_BYTES = _getenv_int("ONECHART_MIN_AUDIO_BYTES", 1000)
MAX_AUDIO_BYTES = _getenv_int("ONECHART_MAX_AUDIO_BYTES", 50 * 1024 * 1024)

# =========================
# Practice / auth
# =========================
DEFAULT_PRACTICE_INFO = _getenv_str("ONECHART_DEFAULT_PRACTICE_INFO", "")
AUTH_TOKEN_TTL_SECONDS = _getenv_int("ONECHART_AUTH_TOKEN_TTL_SECONDS", 60 * 60 * 24 * 14)
SIGNUP_OPEN = _getenv_bool("ONECHART_SIGNUP_OPEN", True)
