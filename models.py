from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class Role(str, Enum):
    """Participant in a consultation. Role-specific fields live in _ROLE_FIELDS."""
    DOCTOR = "DOCTOR"
    PATIENT = "PATIENT"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}")

    @property
    def presence_field(self) -> str:
        return _ROLE_FIELDS[self]['presence']

    @property
    def last_seen_field(self) -> str:
        return _ROLE_FIELDS[self]['last_seen']

    @property
    def appointment_field(self) -> str:
        return _ROLE_FIELDS[self]['appointment']

    @property
    def transcript_prefix(self) -> str:
        return _ROLE_FIELDS[self]['prefix']

    @property
    def other(self) -> "Role":
        return Role.PATIENT if self is Role.DOCTOR else Role.DOCTOR


_ROLE_FIELDS = {
    Role.DOCTOR: {
        'presence': 'doctorJoined',
        'last_seen': 'doctorLastSeen',
        'appointment': 'doctorId',
        'prefix': 'Dr: ',
    },
    Role.PATIENT: {
        'presence': 'patientJoined',
        'last_seen': 'patientLastSeen',
        'appointment': 'patientId',
        'prefix': 'Pt: ',
    },
}


class SessionState(str, Enum):
    WAITING = "WAITING"
    LIVE = "LIVE"
    ENDED = "ENDED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.ENDED, SessionState.CANCELLED)


@dataclass
class Appointment:
    id: str
    doctor_id: str
    patient_id: str
    date_time: int
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    chief_complaint: str = ""
    created_at: Optional[int] = None

    @classmethod
    def from_dict(cls, doc_id: str, data: Dict[str, Any]) -> "Appointment":
        """
        Build an appointment from a Firestore document.
        Raises KeyError/ValueError when the doctor or patient reference is missing.
        """
        doctor_id = data.get('doctorId')
        patient_id = data.get('patientId')
        if not doctor_id or not patient_id:
            raise KeyError(f"Appointment {doc_id} is missing its doctor or patient reference")
        return cls(
            id=str(doc_id),
            doctor_id=doctor_id,
            patient_id=patient_id,
            date_time=int(data['dateTime']),
            status=AppointmentStatus(data.get('status', AppointmentStatus.SCHEDULED.value)),
            chief_complaint=data.get('chiefComplaint', ''),
            created_at=data.get('createdAt'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'doctorId': self.doctor_id,
            'patientId': self.patient_id,
            'dateTime': self.date_time,
            'status': self.status.value,
            'chiefComplaint': self.chief_complaint,
            'createdAt': self.created_at,
        }


@dataclass
class TranscriptChunk:
    id: str
    role: Role
    text: str
    spoken_at: int
    seq: int

    @property
    def line(self) -> str:
        return f"{self.role.transcript_prefix}{self.text}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptChunk":
        return cls(
            id=data['id'],
            role=Role.parse(data['role']),
            text=data.get('text', ''),
            spoken_at=int(data.get('spokenAt', 0)),
            seq=int(data.get('seq', 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'role': self.role.value,
            'text': self.text,
            'spokenAt': self.spoken_at,
            'seq': self.seq,
        }


def to_epoch_ms(value) -> Optional[int]:
    """Firestore server timestamps come back as datetimes; older records hold epoch ms."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return int(value)


@dataclass
class PresenceRecord:
    doctor_joined: bool = False
    patient_joined: bool = False
    doctor_last_seen: Optional[int] = None
    patient_last_seen: Optional[int] = None
    chunks: List[TranscriptChunk] = field(default_factory=list)
    # Server clock minus local clock, measured when the snapshot was read
    clock_offset_ms: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], clock_offset_ms: int = 0) -> "PresenceRecord":
        data = data or {}
        chunks = []
        for raw in data.get('transcriptChunks') or []:
            try:
                chunks.append(TranscriptChunk.from_dict(raw))
            except (KeyError, ValueError, TypeError):
                continue
        return cls(
            doctor_joined=data.get('doctorJoined') is True,
            patient_joined=data.get('patientJoined') is True,
            doctor_last_seen=to_epoch_ms(data.get('doctorLastSeen')),
            patient_last_seen=to_epoch_ms(data.get('patientLastSeen')),
            chunks=chunks,
            clock_offset_ms=clock_offset_ms,
        )

    def joined(self, role: Role) -> bool:
        return self.doctor_joined if role is Role.DOCTOR else self.patient_joined

    def last_seen(self, role: Role) -> Optional[int]:
        return self.doctor_last_seen if role is Role.DOCTOR else self.patient_last_seen

    def server_now_ms(self, local_now_ms: int) -> int:
        return local_now_ms + self.clock_offset_ms

    def is_present(self, role: Role, now_ms: int, lease_ms: int) -> bool:
        """A party is present while its flag is set and its lease has not gone stale."""
        if not self.joined(role):
            return False
        seen = self.last_seen(role)
        if seen is None:
            return True
        return now_ms - int(seen) <= lease_ms

    @property
    def transcript(self) -> str:
        ordered = sorted(self.chunks, key=lambda c: (c.spoken_at, c.seq))
        return "\n".join(chunk.line for chunk in ordered)


@dataclass
class NotificationPayload:
    appointment_id: str
    user_id: str
    user_role: Role

    def to_dict(self) -> Dict[str, Any]:
        return {
            'appointmentId': self.appointment_id,
            'userId': self.user_id,
            'userRole': self.user_role.value,
        }


class Severity(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def _coerce_severity(value):
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).strip().upper())
    except ValueError:
        return Severity.NORMAL


class InsightSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    severity: Severity = Severity.NORMAL
    detected_symptoms: List[str] = Field(default_factory=list, alias='detectedSymptoms')
    red_flags: List[str] = Field(default_factory=list, alias='redFlags')
    suggested_questions: List[str] = Field(default_factory=list, alias='suggestedQuestions')
    preliminary_diagnosis: str = Field(default='', alias='preliminaryDiagnosis')

    @field_validator('severity', mode='before')
    @classmethod
    def normalize_severity(cls, value):
        return _coerce_severity(value)


class MedicationInfo(BaseModel):
    name: str = ''
    dosage: str = ''
    frequency: str = ''
    duration: str = ''
    timing: str = ''
    instructions: str = ''


class MedicalExtraction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symptoms: str = ''
    diagnosis: str = ''
    severity: Severity = Severity.NORMAL
    medications: List[MedicationInfo] = Field(default_factory=list)
    lab_tests: List[str] = Field(default_factory=list, alias='labTests')
    instructions: str = ''
    follow_up_days: Optional[int] = Field(default=None, alias='followUpDays')

    @field_validator('severity', mode='before')
    @classmethod
    def normalize_severity(cls, value):
        return _coerce_severity(value)
