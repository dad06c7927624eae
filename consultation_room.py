import logging

from consultation_session import ConsultationSession
from errors import ConsultationError
from insights import InsightRefresher
from models import SessionState
from voice_capture import VoiceCaptureLoop

logger = logging.getLogger(__name__)


class ConsultationRoom:
    """One user's live consultation: shared session, voice capture and AI insights."""

    def __init__(self, appointment_id, user_id, role, presence, appointments, recognizer,
                 assistant=None, session_options=None, capture_options=None):
        self.session = ConsultationSession(appointment_id, user_id, role, presence, appointments, **(session_options or {}))
        self.insights = InsightRefresher(assistant)
        self.capture = VoiceCaptureLoop(
            recognizer,
            self.session.role,
            on_utterance=self.session.append_transcript,
            insights=self.insights,
            **(capture_options or {})
        )
        self.recognizer = recognizer
        self.session.state.observe(self._on_state_change)

    @property
    def appointment_id(self) -> str:
        return self.session.appointment_id

    @property
    def is_closed(self) -> bool:
        return self.session.state.value.is_terminal

    def _on_state_change(self, state: SessionState):
        if state.is_terminal:
            logger.info(f"Consultation {self.appointment_id} is {state.value}, stopping voice capture")
            self._stop_capture()

    def _stop_capture(self):
        # Clips uploaded before the mute must never reach the transcript
        self.capture.stop_capture()
        self.recognizer.discard_pending()

    async def open(self):
        await self.session.join()
        self.capture.start_capture()

    def toggle_mic(self) -> bool:
        if self.is_closed:
            raise ConsultationError(f"Consultation {self.appointment_id} has ended")
        listening = self.capture.toggle()
        if not listening:
            self.recognizer.discard_pending()
        return listening

    async def refresh_insights(self) -> bool:
        return await self.insights.refresh(self.capture.transcript.value)

    async def close(self):
        self._stop_capture()
        await self.session.leave()

    def status(self) -> dict:
        snapshot = self.insights.snapshot.value
        return {
            **self.session.status(),
            'listening': self.capture.listening.value,
            'partial': self.capture.partial.value,
            'lastError': self.capture.last_error.value,
            'localTranscript': self.capture.transcript.value,
            'insights': snapshot.model_dump(by_alias=True, mode='json') if snapshot is not None else None,
            'refreshEnabled': self.insights.refresh_enabled.value,
        }
