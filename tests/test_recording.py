import pytest

from onechart import config
from onechart.errors import InvalidAudio, RecordingInProgress, RecordingNotFound
from onechart.recording import RecordingController, mime_for_upload, payload_from_upload, validate_audio


def test_mime_for_upload():
    assert mime_for_upload("visit.m4a", None) == "audio/mp4"
    assert mime_for_upload("blob", "audio/ogg; codecs=opus") == "audio/ogg"
    assert mime_for_upload(None, "application/octet-stream") == "audio/webm"


def test_validate_audio_bounds(monkeypatch):
    with pytest.raises(InvalidAudio):
        validate_audio(b"")
    with pytest.raises(InvalidAudio):
        validate_audio(b"\x00" * (config.MIN_AUDIO_BYTES - 1))
    monkeypatch.setattr(config, "MAX_AUDIO_BYTES", 2000)
    with pytest.raises(InvalidAudio):
        validate_audio(b"\x00" * 2001)
    validate_audio(b"\x00" * 1500)


def test_payload_from_upload():
    payload = payload_from_upload(b"\x00" * 2000, "visit.wav", None)
    assert payload.mime_type == "audio/wav"
    assert payload.size == 2000


def test_controller_collects_chunks():
    rec = RecordingController()
    rec.start("s1", "audio/ogg")
    assert rec.is_active("s1")
    rec.append("s1", b"\x00" * 800)
    assert rec.append("s1", b"\x00" * 800) == 1600
    payload = rec.stop("s1")
    assert payload.size == 1600
    assert payload.mime_type == "audio/ogg"
    assert not rec.is_active("s1")


def test_controller_guards():
    rec = RecordingController()
    rec.start("s1")
    with pytest.raises(RecordingInProgress):
        rec.start("s1")
    with pytest.raises(RecordingNotFound):
        rec.append("s2", b"x")
    with pytest.raises(RecordingNotFound):
        rec.stop("s2")


def test_stop_rejects_short_recording():
    rec = RecordingController()
    rec.start("s1")
    rec.append("s1", b"\x00" * 10)
    with pytest.raises(InvalidAudio):
        rec.stop("s1")
    assert not rec.is_active("s1")


def test_cancel_drops_buffer():
    rec = RecordingController()
    rec.start("s1")
    rec.append("s1", b"\x00" * 10)
    assert rec.cancel("s1")
    assert not rec.cancel("s1")
