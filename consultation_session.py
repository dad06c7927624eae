import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

import config
from errors import ConsultationError
from models import AppointmentStatus, PresenceRecord, Role, SessionState, TranscriptChunk
from observable import LiveValue

logger = logging.getLogger(__name__)


class ConsultationSession:
    """
    One party's view of a live consultation.

    WAITING -> LIVE once both parties are present, which cancels the no-show
    timer. WAITING -> CANCELLED when the timer elapses first; the appointment
    is cancelled. Leaving, or the other party leaving a live session, ends it.
    Presence is a lease: a joined flag only counts while its last-seen
    timestamp is fresh, so a silently disconnected party stops counting.
    """

    def __init__(self, appointment_id, user_id: str, role, presence, appointments,
                 no_show_timeout: float = config.NO_SHOW_TIMEOUT_SECONDS,
                 heartbeat_interval: float = config.HEARTBEAT_INTERVAL_SECONDS,
                 lease_ms: int = config.PRESENCE_LEASE_MS,
                 clock: Callable[[], float] = time.time):
        self.appointment_id = str(appointment_id) if appointment_id is not None else ""
        self.user_id = user_id
        self.role = Role.parse(role)
        self.presence = presence
        self.appointments = appointments
        self.no_show_timeout = no_show_timeout
        self.heartbeat_interval = heartbeat_interval
        self.lease_ms = lease_ms
        self.clock = clock

        self.state = LiveValue(SessionState.WAITING, "state")
        self.doctor_present = LiveValue(False, "doctor_present")
        self.patient_present = LiveValue(False, "patient_present")
        self.other_party_connected = LiveValue(False, "other_party_connected")
        self.transcript = LiveValue("", "transcript")

        self._record = PresenceRecord()
        self._joined = False
        self._joined_at_ms: Optional[int] = None
        self._wait_started: Optional[float] = None
        self._live_at_ms: Optional[int] = None
        self._seq = 0
        self._last_spoken_at = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._no_show_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background = set()

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _spawn(self, coro):
        task = self._loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def join(self):
        if self._joined:
            return
        if not self.appointment_id or self.appointment_id == "0":
            raise ConsultationError("Cannot join a consultation without an appointment id")

        self._loop = asyncio.get_running_loop()
        self._joined = True
        self._joined_at_ms = self._now_ms()
        self._wait_started = time.monotonic()
        self._no_show_task = self._loop.create_task(self._no_show_countdown())

        try:
            await asyncio.to_thread(self.presence.mark_joined, self.appointment_id, self.role, True)
            self._unsubscribe = await asyncio.to_thread(self.presence.subscribe, self.appointment_id, self._on_remote_record)
        except Exception as e:
            logger.error(f"Failed to join consultation {self.appointment_id}: {str(e)}")
            self._no_show_task.cancel()
            self._joined = False
            raise ConsultationError(f"Failed to join consultation {self.appointment_id}") from e

        self._heartbeat_task = self._loop.create_task(self._heartbeat())
        logger.info(f"{self.role.value} {self.user_id} joined consultation {self.appointment_id}")

    def _on_remote_record(self, record: PresenceRecord):
        # Called on the Firestore listener thread
        try:
            self._loop.call_soon_threadsafe(self._apply_record, record)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping snapshot for {self.appointment_id}")

    def _apply_record(self, record: PresenceRecord):
        if self.state.value.is_terminal:
            return
        self._record = record
        self.transcript.set(record.transcript)
        self._evaluate()

    def _evaluate(self):
        if self.state.value.is_terminal:
            return
        now = self._record.server_now_ms(self._now_ms())
        doctor_here = self._record.is_present(Role.DOCTOR, now, self.lease_ms)
        patient_here = self._record.is_present(Role.PATIENT, now, self.lease_ms)
        self.doctor_present.set(doctor_here)
        self.patient_present.set(patient_here)
        self.other_party_connected.set(doctor_here if self.role.other is Role.DOCTOR else patient_here)

        if self.state.value is SessionState.WAITING and doctor_here and patient_here:
            self._go_live()
        elif self.state.value is SessionState.LIVE and not self._record.joined(self.role.other):
            logger.info(f"{self.role.other.value} left consultation {self.appointment_id}")
            self._spawn(self._teardown(SessionState.ENDED))

    def _go_live(self):
        self._live_at_ms = self._now_ms()
        if self._no_show_task is not None:
            self._no_show_task.cancel()
        self.state.set(SessionState.LIVE)
        logger.info(f"Both parties connected to consultation {self.appointment_id}")
        self._spawn(self._set_status(AppointmentStatus.IN_PROGRESS))

    async def _set_status(self, status: AppointmentStatus):
        try:
            await asyncio.to_thread(self.appointments.update_status, self.appointment_id, status)
        except Exception as e:
            logger.error(f"Failed to set appointment {self.appointment_id} to {status.value}: {str(e)}")

    async def _no_show_countdown(self):
        try:
            await asyncio.sleep(self.no_show_timeout)
        except asyncio.CancelledError:
            return
        if self.state.value is not SessionState.WAITING:
            return
        logger.warning(f"Meeting {self.appointment_id} cancelled - {self.role.other.value} absent")
        # Terminal first, so a late arrival can no longer take the session LIVE
        await self._teardown(SessionState.CANCELLED)
        await self._set_status(AppointmentStatus.CANCELLED)

    async def _heartbeat(self):
        while not self.state.value.is_terminal:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state.value.is_terminal:
                return
            try:
                await asyncio.to_thread(self.presence.heartbeat, self.appointment_id, self.role)
            except Exception as e:
                logger.warning(f"Heartbeat failed for consultation {self.appointment_id}: {str(e)}")
            # Leases may have expired since the last snapshot
            self._evaluate()

    def remaining_wait_seconds(self) -> float:
        if self.state.value is not SessionState.WAITING or self._wait_started is None:
            return 0.0
        return max(0.0, self.no_show_timeout - (time.monotonic() - self._wait_started))

    async def append_transcript(self, text: str) -> Optional[TranscriptChunk]:
        """
        Append one utterance, prefixed with this party's role, to the shared transcript.
        Args:
            text (str): The recognized utterance.
        Returns:
            TranscriptChunk or None when the text is blank.
        """
        text = (text or "").strip()
        if not text:
            return None
        if not self._joined or self.state.value.is_terminal:
            raise ConsultationError(f"Consultation {self.appointment_id} is not active")

        self._seq += 1
        spoken_at = max(self._now_ms(), self._last_spoken_at)
        self._last_spoken_at = spoken_at
        chunk = TranscriptChunk(id=uuid.uuid4().hex, role=self.role, text=text, spoken_at=spoken_at, seq=self._seq)
        await asyncio.to_thread(self.presence.append_chunk, self.appointment_id, chunk)
        logger.debug(f"Appended transcript chunk {chunk.seq} to {self.appointment_id}: {chunk.line}")
        return chunk

    async def leave(self):
        if not self._joined or self.state.value.is_terminal:
            return
        await self._teardown(SessionState.ENDED)

    async def _teardown(self, final_state: SessionState):
        if self.state.value.is_terminal:
            return
        was_live = self._live_at_ms is not None
        self.state.set(final_state)
        self.other_party_connected.set(False)

        current = asyncio.current_task()
        for task in (self._no_show_task, self._heartbeat_task):
            if task is not None and task is not current:
                task.cancel()

        if self._unsubscribe is not None:
            try:
                self._unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from consultation {self.appointment_id}: {str(e)}")
            self._unsubscribe = None

        # Best effort: a killed process never gets here, the lease covers that case
        try:
            await asyncio.to_thread(self.presence.mark_joined, self.appointment_id, self.role, False)
        except Exception as e:
            logger.warning(f"Failed to clear presence for consultation {self.appointment_id}: {str(e)}")

        if was_live and final_state is SessionState.ENDED:
            try:
                await asyncio.to_thread(
                    self.appointments.save_consultation_record,
                    self.appointment_id, self.role, self._live_at_ms, self._now_ms(), self.transcript.value,
                )
            except Exception as e:
                logger.error(f"Failed to save consultation record for {self.appointment_id}: {str(e)}")
        logger.info(f"Consultation {self.appointment_id} reached {final_state.value}")

    def status(self) -> dict:
        return {
            'appointmentId': self.appointment_id,
            'role': self.role.value,
            'state': self.state.value.value,
            'doctorPresent': self.doctor_present.value,
            'patientPresent': self.patient_present.value,
            'otherPartyConnected': self.other_party_connected.value,
            'remainingWaitSeconds': round(self.remaining_wait_seconds()),
            'transcript': self.transcript.value,
        }
