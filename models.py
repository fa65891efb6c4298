"""Database models for the clinic queue.

We use SQLModel to define the schema.  The database stores clinics and
their queue entries.  A queue entry is one patient's presence in a
clinic's queue for a given day; entries in a terminal status are kept so
that the day's statistics can be computed from them.  All timestamps are
naive UTC.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

# Timestamps are stored without a zone and always mean UTC.
NaiveUTC = DateTime(timezone=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class QueueStatus(str, Enum):
    """Possible statuses for a queue entry."""

    WAITING = "WAITING"
    NOTIFIED = "NOTIFIED"
    IN_CONSULTATION = "IN_CONSULTATION"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset(
    {QueueStatus.WAITING, QueueStatus.NOTIFIED, QueueStatus.IN_CONSULTATION}
)
TERMINAL_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.NO_SHOW, QueueStatus.CANCELLED}
)


class CheckInMethod(str, Enum):
    QR_CODE = "QR_CODE"
    MANUAL = "MANUAL"
    WHATSAPP = "WHATSAPP"
    SMS = "SMS"


class Clinic(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    doctor_name: Optional[str] = None
    avg_consultation_mins: int = Field(default=15)
    notify_at_position: int = Field(default=2)
    is_doctor_present: bool = Field(default=False)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=NaiveUTC)


class QueueEntry(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    clinic_id: str = Field(foreign_key="clinic.id", index=True)
    patient_name: Optional[str] = None
    patient_phone: str = Field(index=True)
    position: int = Field(default=0)
    status: QueueStatus = Field(default=QueueStatus.WAITING, index=True)
    check_in_method: CheckInMethod = Field(default=CheckInMethod.MANUAL)
    arrived_at: datetime = Field(default_factory=utcnow, index=True, sa_type=NaiveUTC)
    notified_at: Optional[datetime] = Field(default=None, sa_type=NaiveUTC)
    called_at: Optional[datetime] = Field(default=None, sa_type=NaiveUTC)
    completed_at: Optional[datetime] = Field(default=None, sa_type=NaiveUTC)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def clone(self, **changes) -> "QueueEntry":
        """Return a detached copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return QueueEntry(**data)
