from enum import Enum
from typing import List, Optional
from datetime import date as date_type, datetime, timezone
from decimal import Decimal

from pydantic import field_validator, model_validator
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


class AppointmentPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# statuses that no longer hold the practitioner's time
FREE_SLOT_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)


class Appointment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    # human-referenceable id, e.g. APT17048808000001234
    appointment_id: str = Field(index=True, unique=True)

    patient_id: int = Field(foreign_key="user.id", index=True)
    doctor_id: int = Field(foreign_key="user.id", index=True)
    hospital_id: int = Field(foreign_key="hospital.id", index=True)
    department_id: Optional[int] = Field(default=None, foreign_key="department.id")
    previous_appointment_id: Optional[int] = Field(default=None, foreign_key="appointment.id")

    date: date_type = Field(index=True)
    slot_start: datetime = Field(index=True)
    slot_end: datetime

    status: AppointmentStatus = Field(default=AppointmentStatus.PENDING, index=True)
    payment_status: AppointmentPaymentStatus = Field(default=AppointmentPaymentStatus.PENDING, index=True)

    payment_amount: Decimal = Field(max_digits=12, decimal_places=2)
    wallet_credit_used: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    transaction_id: Optional[str] = Field(default=None, index=True)

    appointment_type: Optional[str] = None  # consultation | follow_up | emergency
    chief_complaint: Optional[str] = None
    is_urgent: bool = False
    reschedule_count: int = 0

    # clinical payload, opaque here
    vitals: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    checkup_notes: Optional[str] = None
    diagnosis: Optional[str] = None
    prescriptions: Optional[list] = Field(default=None, sa_column=Column(JSON))

    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = Field(default=None, index=True)
    cancelled_by: Optional[int] = Field(default=None, foreign_key="user.id")
    cancellation_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AppointmentStatusHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    appointment_id: int = Field(foreign_key="appointment.id", index=True)
    from_status: Optional[AppointmentStatus] = None
    status: AppointmentStatus
    changed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    changed_at: datetime = Field(default_factory=datetime.utcnow)
    note: Optional[str] = None


# =========================
# REQUEST SCHEMAS
# =========================

class TimeSlot(SQLModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def to_naive_utc(cls, value: datetime) -> datetime:
        # slots are stored as naive UTC
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def check_order(self) -> "TimeSlot":
        if self.start >= self.end:
            raise ValueError("time slot start must be before its end")
        return self


class AppointmentCreate(SQLModel):
    # patients book for themselves; front desk must name the patient
    patient_id: Optional[int] = None
    doctor_id: int
    hospital_id: int
    department_id: Optional[int] = None
    previous_appointment_id: Optional[int] = None
    date: date_type
    time_slot: TimeSlot
    payment_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    appointment_type: Optional[str] = None
    chief_complaint: Optional[str] = None
    is_urgent: bool = False


class BloodPressure(SQLModel):
    systolic: int = Field(gt=0)
    diastolic: int = Field(gt=0)


class Vitals(SQLModel):
    blood_pressure: Optional[BloodPressure] = None
    temperature: Optional[float] = None
    heart_rate: Optional[int] = None
    weight: Optional[float] = None
    height: Optional[float] = None
    oxygen_saturation: Optional[float] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_not_empty(self) -> "Vitals":
        measured = self.model_dump(exclude={"notes"}, exclude_none=True)
        if not measured:
            raise ValueError("at least one vital sign is required")
        return self


class CheckInRequest(SQLModel):
    vitals: Optional[Vitals] = None


class Prescription(SQLModel):
    medicine_name: str
    dosage: str
    frequency: str
    duration: str
    instructions: Optional[str] = None


class CompleteRequest(SQLModel):
    checkup_notes: Optional[str] = None
    diagnosis: Optional[str] = None
    prescriptions: Optional[List[Prescription]] = None


class CancelRequest(SQLModel):
    reason: str = Field(min_length=1)


class RescheduleRequest(SQLModel):
    date: date_type
    time_slot: TimeSlot
