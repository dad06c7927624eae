import logging
from typing import Callable

from firebase_admin import firestore
from google.api_core import exceptions

import config
from appointment_store import now_ms
from models import PresenceRecord, Role, TranscriptChunk, to_epoch_ms

logger = logging.getLogger(__name__)


class PresenceStore:
    """
    Shared live-session document, one per appointment id:
    {doctorJoined, patientJoined, doctorLastSeen, patientLastSeen, transcriptChunks}.
    Last-seen times are server timestamps so every instance reads the same clock.
    """

    def __init__(self, db=None):
        self.db = db if db is not None else config.get_firestore_client()
        self.collection = self.db.collection(config.SESSIONS_COLLECTION)

    def _doc(self, appointment_id):
        return self.collection.document(str(appointment_id))

    def mark_joined(self, appointment_id: str, role: Role, joined: bool = True) -> None:
        role = Role.parse(role)
        doc_ref = self._doc(appointment_id)
        fields = {role.presence_field: joined, role.last_seen_field: firestore.SERVER_TIMESTAMP}
        try:
            doc_ref.update(fields)
        except exceptions.NotFound:
            logger.debug(f"Session record {appointment_id} missing, creating it")
            doc_ref.set({**fields, 'transcriptChunks': []}, merge=True)
        logger.info(f"{role.value} presence for appointment {appointment_id} set to {joined}")

    def heartbeat(self, appointment_id: str, role: Role) -> None:
        role = Role.parse(role)
        self._doc(appointment_id).update({role.last_seen_field: firestore.SERVER_TIMESTAMP})

    def append_chunk(self, appointment_id: str, chunk: TranscriptChunk) -> None:
        # ArrayUnion is applied by the store, so concurrent appends never overwrite each other
        self._doc(appointment_id).set(
            {'transcriptChunks': firestore.ArrayUnion([chunk.to_dict()])},
            merge=True,
        )

    def subscribe(self, appointment_id: str, callback: Callable[[PresenceRecord], None]) -> Callable[[], None]:
        """
        Push-subscribe to the session record. The callback runs on a Firestore
        listener thread; returns a function that cancels the subscription.
        """
        def on_snapshot(doc_snapshots, changes, read_time):
            server_ms = to_epoch_ms(read_time)
            offset = server_ms - now_ms() if server_ms is not None else 0
            for snap in doc_snapshots:
                record = PresenceRecord.from_dict(snap.to_dict() if snap.exists else None, clock_offset_ms=offset)
                callback(record)

        watch = self._doc(appointment_id).on_snapshot(on_snapshot)
        return watch.unsubscribe
