from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session

from medibook.core.config import get_settings
from medibook.core.errors import ValidationError
from medibook.core.permissions import Action
from medibook.core.security import ensure_patient_scope, require
from medibook.database import get_session
from medibook.dependencies import get_appointment_service
from medibook.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    AppointmentStatusHistory,
    CancelRequest,
    CheckInRequest,
    CompleteRequest,
    RescheduleRequest,
    Vitals,
)
from medibook.models.user import Role, User
from medibook.services.appointments import AppointmentService
from medibook.services.directory import Directory
from medibook.services.slot_checker import SlotChecker

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _visible(appt: Appointment, user: User) -> Appointment:
    ensure_patient_scope(user, appt.patient_id)
    return appt


# =========================
# BOOK
# =========================
@router.post("/", response_model=Appointment, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: AppointmentCreate,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.BOOK_APPOINTMENT)),
):
    # patients always book for themselves
    if current_user.role == Role.PATIENT:
        patient_id = current_user.id
    elif data.patient_id is None:
        raise ValidationError("patient_id is required when booking on behalf of a patient")
    else:
        patient_id = data.patient_id

    return service.book(data, patient_id, booked_by=current_user.id)


# =========================
# QUERIES
# =========================
@router.get("/", response_model=List[Appointment])
def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    practitioner_id: Optional[int] = None,
    hospital_id: Optional[int] = None,
    day: Optional[date] = None,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    return service.list(
        current_user,
        status=status_filter,
        doctor_id=practitioner_id,
        hospital_id=hospital_id,
        day=day,
    )


@router.get("/upcoming", response_model=List[Appointment])
def upcoming_appointments(
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    return service.upcoming(current_user)


@router.get("/available")
def available_slots(
    practitioner_id: int,
    day: date,
    duration_minutes: int = Query(30, gt=0, le=480),
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    settings = get_settings()
    Directory(session).get_practitioner(practitioner_id)

    slots = SlotChecker(session).available_slots(
        practitioner_id,
        day,
        duration=timedelta(minutes=duration_minutes),
        step=timedelta(minutes=settings.SLOT_STEP_MINUTES),
        open_hour=settings.DAY_START_HOUR,
        close_hour=settings.DAY_END_HOUR,
    )

    return {
        "practitioner_id": practitioner_id,
        "date": day.isoformat(),
        "duration_minutes": duration_minutes,
        "slots": slots,
    }


@router.get("/by-reference/{reference}", response_model=Appointment)
def get_by_reference(
    reference: str,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    return _visible(service.get_by_reference(reference), current_user)


@router.get("/{appointment_id}", response_model=Appointment)
def get_appointment(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    return _visible(service.get(appointment_id), current_user)


@router.get("/{appointment_id}/history", response_model=List[AppointmentStatusHistory])
def get_history(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_APPOINTMENTS)),
):
    _visible(service.get(appointment_id), current_user)
    return service.history(appointment_id)


# =========================
# LIFECYCLE
# =========================
@router.patch("/{appointment_id}/confirm", response_model=Appointment)
def confirm_appointment(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.CONFIRM_APPOINTMENT)),
):
    return service.confirm(appointment_id, current_user.id)


@router.patch("/{appointment_id}/checkin", response_model=Appointment)
def check_in_appointment(
    appointment_id: int,
    data: Optional[CheckInRequest] = None,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.CHECK_IN)),
):
    vitals = None
    if data is not None and data.vitals is not None:
        vitals = data.vitals.model_dump(exclude_none=True)
    return service.check_in(appointment_id, current_user.id, vitals)


@router.patch("/{appointment_id}/vitals", response_model=Appointment)
def record_vitals(
    appointment_id: int,
    vitals: Vitals,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.RECORD_VITALS)),
):
    return service.record_vitals(appointment_id, vitals.model_dump(exclude_none=True), current_user.id)


@router.patch("/{appointment_id}/complete", response_model=Appointment)
def complete_appointment(
    appointment_id: int,
    data: CompleteRequest,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.COMPLETE_APPOINTMENT)),
):
    # a doctor may only close their own visits
    if current_user.role == Role.DOCTOR and service.get(appointment_id).doctor_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the attending practitioner can complete this appointment",
        )
    return service.complete(appointment_id, data, current_user.id)


@router.patch("/{appointment_id}/cancel", response_model=Appointment)
def cancel_appointment(
    appointment_id: int,
    data: CancelRequest,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.CANCEL_APPOINTMENT)),
):
    _visible(service.get(appointment_id), current_user)
    return service.cancel(appointment_id, data.reason, current_user.id)


@router.patch("/{appointment_id}/no-show", response_model=Appointment)
def mark_no_show(
    appointment_id: int,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.MARK_NO_SHOW)),
):
    return service.mark_no_show(appointment_id, current_user.id)


@router.post("/{appointment_id}/reschedule", response_model=Appointment)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    service: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.RESCHEDULE_APPOINTMENT)),
):
    _visible(service.get(appointment_id), current_user)
    return service.reschedule(appointment_id, data.date, data.time_slot, current_user.id)
