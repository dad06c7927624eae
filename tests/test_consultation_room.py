"""
Tests for the composed consultation room.
"""

import asyncio
import os
import pytest
from unittest.mock import MagicMock

from consultation_room import ConsultationRoom
from consultation_session import ConsultationSession
from errors import ConsultationError
from models import InsightSnapshot, SessionState
from speech import WhisperRecognizer

FAST_SESSION = {"no_show_timeout": 5, "heartbeat_interval": 5}
FAST_CAPTURE = {"result_restart_delay": 0, "error_restart_delay": 0}


def make_room(presence, appointments, recognizer, role="DOCTOR", assistant=None):
    return ConsultationRoom("42", f"{role.lower()}-1", role, presence, appointments, recognizer,
                            assistant=assistant, session_options=FAST_SESSION, capture_options=FAST_CAPTURE)


class TestConsultationRoom:
    """Tests for ConsultationRoom"""

    @pytest.mark.asyncio
    async def test_open_joins_and_listens(self, presence, recognizer_factory):
        """Test opening joins the session and starts capture"""
        room = make_room(presence, MagicMock(), recognizer_factory())
        await room.open()

        assert room.session.state.value is SessionState.WAITING
        assert room.capture.is_active
        await room.close()
        assert not room.capture.is_active
        assert room.is_closed

    @pytest.mark.asyncio
    async def test_speech_reaches_shared_transcript(self, presence, recognizer_factory, eventually):
        """Test recognized speech is appended to the shared transcript"""
        room = make_room(presence, MagicMock(), recognizer_factory(["any allergies"]))
        await room.open()

        await eventually(lambda: room.session.transcript.value == "Dr: any allergies")
        assert room.capture.transcript.value == "Dr: any allergies"
        await room.close()

    @pytest.mark.asyncio
    async def test_session_end_stops_capture(self, presence, recognizer_factory, eventually):
        """Test capture stops when the other party leaves"""
        appointments = MagicMock()
        doctor = make_room(presence, appointments, recognizer_factory())
        patient = ConsultationSession("42", "patient-1", "PATIENT", presence, appointments, **FAST_SESSION)
        await doctor.open()
        await patient.join()
        await eventually(lambda: doctor.session.state.value is SessionState.LIVE)

        await patient.leave()
        await eventually(lambda: doctor.session.state.value is SessionState.ENDED)
        assert not doctor.capture.is_active

        with pytest.raises(ConsultationError):
            doctor.toggle_mic()

    @pytest.mark.asyncio
    async def test_toggle_mic(self, presence, recognizer_factory):
        """Test muting keeps the session running"""
        room = make_room(presence, MagicMock(), recognizer_factory())
        await room.open()

        assert room.toggle_mic() is False
        assert room.session.state.value is SessionState.WAITING
        assert room.toggle_mic() is True
        await room.close()

    @pytest.mark.asyncio
    async def test_mute_discards_queued_audio(self, presence, tmp_path):
        """Test a clip queued before muting is deleted and never transcribed"""
        client = MagicMock()
        client.audio.transcriptions.create.return_value = MagicMock(text="private remark")
        recognizer = WhisperRecognizer(client, listen_timeout=5)
        room = make_room(presence, MagicMock(), recognizer)
        await room.open()
        await asyncio.sleep(0)

        clip = tmp_path / "late.webm"
        clip.write_bytes(b"\0" * 2048)
        # Upload lands just as the user mutes, before the capture task picks it up
        recognizer.submit_clip(str(clip))
        assert room.toggle_mic() is False

        assert not os.path.exists(clip)
        assert recognizer.audio_queue.empty()
        assert room.toggle_mic() is True
        await asyncio.sleep(0.1)
        client.audio.transcriptions.create.assert_not_called()
        assert room.session.transcript.value == ""
        await room.close()

    @pytest.mark.asyncio
    async def test_close_discards_queued_audio(self, presence, recognizer_factory):
        """Test closing the room drops pending audio"""
        recognizer = recognizer_factory()
        room = make_room(presence, MagicMock(), recognizer)
        await room.open()
        await room.close()
        assert recognizer.discarded >= 1

    @pytest.mark.asyncio
    async def test_refresh_insights_uses_local_transcript(self, presence, recognizer_factory, eventually):
        """Test manual refresh sends the running transcript to the assistant"""
        text = "I have had a sharp pain in my lower back for three days"
        assistant = MagicMock(return_value=InsightSnapshot(severity="HIGH"))
        room = make_room(presence, MagicMock(), recognizer_factory([text]), role="PATIENT", assistant=assistant)
        await room.open()
        await eventually(lambda: room.capture.transcript.value == f"Pt: {text}")

        assert await room.refresh_insights() is True
        assistant.assert_called_once_with(f"Pt: {text}")
        status = room.status()
        assert status["insights"]["severity"] == "HIGH"
        assert status["refreshEnabled"] is True
        assert status["listening"] is True
        await room.close()
