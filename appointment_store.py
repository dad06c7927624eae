import logging
import time
from typing import List, Optional

from firebase_admin import firestore

import config
from models import Appointment, AppointmentStatus, Role

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class AppointmentStore:
    """Firestore-backed access to the appointments collection."""

    def __init__(self, db=None):
        self.db = db if db is not None else config.get_firestore_client()
        self.collection = self.db.collection(config.APPOINTMENTS_COLLECTION)

    def list_for_user(self, user_id: str, role: Role) -> List[Appointment]:
        """
        Fetch the current snapshot of a doctor's or patient's appointments.
        Documents missing their doctor or patient reference are skipped.
        """
        role = Role.parse(role)
        docs = self.collection.where(role.appointment_field, '==', user_id).get()
        appointments = []
        for doc in docs:
            try:
                appointments.append(Appointment.from_dict(doc.id, doc.to_dict() or {}))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed appointment {doc.id}: {str(e)}")
        logger.debug(f"Fetched {len(appointments)} appointments for {role.value} {user_id}")
        return appointments

    def get(self, appointment_id: str) -> Optional[Appointment]:
        snap = self.collection.document(str(appointment_id)).get()
        if not snap.exists:
            return None
        return Appointment.from_dict(snap.id, snap.to_dict() or {})

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        status = AppointmentStatus(status)
        self.collection.document(str(appointment_id)).update({'status': status.value})
        logger.info(f"Appointment {appointment_id} status set to {status.value}")

    def save_consultation_record(self, appointment_id: str, role: Role, start_time: int, end_time: int, transcript: str) -> None:
        record = {
            'appointmentId': str(appointment_id),
            'role': Role.parse(role).value,
            'startTime': start_time,
            'endTime': end_time,
            'durationSeconds': max(0, (end_time - start_time) // 1000),
            'fullTranscript': transcript,
            'timestamp': firestore.SERVER_TIMESTAMP,
        }
        self.db.collection(config.CONSULTATION_RECORDS_COLLECTION).add(record)
        logger.info(f"Saved consultation record for appointment {appointment_id} ({record['durationSeconds']}s)")
