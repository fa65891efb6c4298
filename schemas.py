"""Pydantic schemas for requests and broadcast payloads.

Field names are snake_case in Python and camelCase on the wire, which is
what the dashboard and patient pages consume.  Request bodies accept either
spelling.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import CheckInMethod, QueueStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class QueueStats(CamelModel):
    waiting: int = 0
    seen: int = 0
    avg_wait: Optional[int] = None
    last_consultation_mins: Optional[int] = None
    no_shows: int = 0
    max_wait: Optional[int] = None


class QueueEntryOut(CamelModel):
    id: str
    clinic_id: str
    patient_name: Optional[str] = None
    patient_phone: str
    position: int
    status: QueueStatus
    check_in_method: CheckInMethod
    arrived_at: datetime
    notified_at: Optional[datetime] = None
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueSnapshot(CamelModel):
    queue: List[QueueEntryOut]
    stats: QueueStats


class PatientUpdate(CamelModel):
    position: int
    status: QueueStatus


class PresenceUpdate(CamelModel):
    clinic_id: str
    is_doctor_present: bool


class ClinicOut(CamelModel):
    id: str
    name: str
    doctor_name: Optional[str] = None
    avg_consultation_mins: int
    notify_at_position: int
    is_doctor_present: bool
    is_active: bool


class PatientStatus(QueueEntryOut):
    estimated_wait_mins: Optional[int] = None
    avg_consultation_mins: int
    clinic_name: str
    doctor_name: Optional[str] = None
    is_doctor_present: bool


# ----- request bodies -----


class ClinicCreate(CamelModel):
    name: str = Field(min_length=1)
    doctor_name: Optional[str] = None
    avg_consultation_mins: int = Field(default=15, ge=1)
    notify_at_position: int = Field(default=2, ge=0)


class AddPatientRequest(CamelModel):
    patient_phone: str
    patient_name: Optional[str] = None
    check_in_method: CheckInMethod = CheckInMethod.MANUAL
    arrived_at: Optional[datetime] = None
    priority: bool = False


class CheckInRequest(CamelModel):
    patient_phone: str
    patient_name: Optional[str] = None


class ReorderRequest(CamelModel):
    direction: Literal["up", "down"]


class MoveRequest(CamelModel):
    new_position: int = Field(ge=1)


class PresenceRequest(CamelModel):
    is_doctor_present: bool
