import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from models import NotificationPayload, Role

logger = logging.getLogger(__name__)

CONSULTATION_CHANNEL_ID = "consultation_channel"


class Importance(int, Enum):
    DEFAULT = 3
    HIGH = 4
    MAX = 5


@dataclass
class NotificationChannel:
    channel_id: str
    name: str
    description: str
    importance: Importance
    bypass_dnd: bool = False
    vibration: bool = False
    public_on_lock_screen: bool = False


@dataclass
class MeetingNotification:
    slot: str
    channel_id: str
    title: str
    text: str
    payload: NotificationPayload
    category: str = "call"
    full_screen: bool = True
    auto_cancel: bool = True
    actions: List[str] = field(default_factory=lambda: ["Join Now"])

    def to_dict(self) -> dict:
        return {
            'slot': self.slot,
            'channelId': self.channel_id,
            'title': self.title,
            'text': self.text,
            'category': self.category,
            'fullScreen': self.full_screen,
            'autoCancel': self.auto_cancel,
            'actions': list(self.actions),
            'payload': self.payload.to_dict(),
        }


class NotificationCenter:
    """
    Local notification surface. Each notification occupies a slot keyed by its
    appointment id, so re-posting for the same appointment replaces the old one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[str, NotificationChannel] = {}
        self._active: Dict[str, MeetingNotification] = {}

    def register_channel(self) -> NotificationChannel:
        with self._lock:
            channel = self._channels.get(CONSULTATION_CHANNEL_ID)
            if channel is None:
                channel = NotificationChannel(
                    channel_id=CONSULTATION_CHANNEL_ID,
                    name="Consultation Calls",
                    description="Incoming consultation alerts",
                    importance=Importance.MAX,
                    bypass_dnd=True,
                    vibration=True,
                    public_on_lock_screen=True,
                )
                self._channels[CONSULTATION_CHANNEL_ID] = channel
            return channel

    def trigger_meeting_notification(self, appointment_id, user_id: str, user_role) -> MeetingNotification:
        """
        Post a high-priority "consultation starting" alert for an appointment.
        Args:
            appointment_id: Non-empty, non-zero appointment id; also the notification slot.
            user_id (str): The user being invited into the session.
            user_role: DOCTOR or PATIENT.
        Returns:
            MeetingNotification: The posted notification.
        """
        slot = str(appointment_id).strip() if appointment_id is not None else ""
        if not slot or slot == "0":
            raise ValueError("appointment_id must be non-empty and non-zero")

        channel = self.register_channel()
        notification = MeetingNotification(
            slot=slot,
            channel_id=channel.channel_id,
            title="Consultation Starting",
            text="Your appointment is scheduled for NOW. Tap to join.",
            payload=NotificationPayload(appointment_id=slot, user_id=user_id, user_role=Role.parse(user_role)),
        )
        with self._lock:
            self._active[slot] = notification
        logger.info(f"Notification triggered for Appointment {slot}")
        return notification

    def active_for_user(self, user_id: str) -> List[MeetingNotification]:
        with self._lock:
            return [n for n in self._active.values() if n.payload.user_id == user_id]

    def get(self, appointment_id) -> Optional[MeetingNotification]:
        with self._lock:
            return self._active.get(str(appointment_id))

    def dismiss(self, appointment_id) -> Optional[MeetingNotification]:
        with self._lock:
            return self._active.pop(str(appointment_id), None)
