import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from sqlmodel import Session, select

from medibook.core.errors import SlotConflict, ValidationError
from medibook.models.appointment import FREE_SLOT_STATUSES, Appointment

logger = logging.getLogger(__name__)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True if [a_start, a_end) overlaps [b_start, b_end)."""
    return a_start < b_end and a_end > b_start


def slot_key(doctor_id: int, day: date) -> str:
    return f"{doctor_id}:{day.isoformat()}"


class SlotChecker:
    """Decides whether a practitioner's time range is free.

    Every appointment not cancelled or marked no-show occupies its
    ``[slot_start, slot_end)``; completed visits keep their slot.
    """

    def __init__(self, session: Session):
        self.session = session

    def find_conflict(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> Optional[Appointment]:
        if start >= end:
            raise ValidationError("Time slot start must be before its end")

        query = select(Appointment).where(
            Appointment.doctor_id == doctor_id,
            Appointment.status.not_in(FREE_SLOT_STATUSES),
            Appointment.slot_start < end,
            Appointment.slot_end > start,
        )
        if exclude_appointment_id is not None:
            query = query.where(Appointment.id != exclude_appointment_id)

        return self.session.exec(query).first()

    def is_available(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> bool:
        return self.find_conflict(doctor_id, start, end, exclude_appointment_id) is None

    def ensure_available(
        self,
        doctor_id: int,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[int] = None,
    ) -> None:
        conflict = self.find_conflict(doctor_id, start, end, exclude_appointment_id)
        if conflict is not None:
            logger.info(
                f"Slot {start:%Y-%m-%d %H:%M}-{end:%H:%M} for doctor {doctor_id} "
                f"clashes with {conflict.appointment_id}"
            )
            raise SlotConflict()

    # =========================
    # AVAILABLE SLOTS FOR A DAY
    # =========================

    def busy_intervals(self, doctor_id: int, day_start: datetime, day_end: datetime) -> List[Tuple[datetime, datetime]]:
        appointments = self.session.exec(
            select(Appointment).where(
                Appointment.doctor_id == doctor_id,
                Appointment.status.not_in(FREE_SLOT_STATUSES),
                Appointment.slot_start < day_end,
                Appointment.slot_end > day_start,
            ).order_by(Appointment.slot_start)
        ).all()
        return [(appt.slot_start, appt.slot_end) for appt in appointments]

    def available_slots(
        self,
        doctor_id: int,
        day: date,
        duration: timedelta,
        step: timedelta,
        open_hour: int,
        close_hour: int,
    ) -> List[Dict[str, str]]:
        if duration <= timedelta(0) or step <= timedelta(0):
            raise ValidationError("Duration and step must be positive")

        day_start = datetime.combine(day, time(open_hour, 0))
        day_end = datetime.combine(day, time(close_hour, 0))
        busy = self.busy_intervals(doctor_id, day_start, day_end)

        slots: List[Dict[str, str]] = []
        current = day_start

        while current + duration <= day_end:
            slot_start = current
            slot_end = current + duration

            if not any(overlaps(slot_start, slot_end, b_start, b_end) for b_start, b_end in busy):
                slots.append({"start": slot_start.isoformat(), "end": slot_end.isoformat()})

            current += step

        return slots
