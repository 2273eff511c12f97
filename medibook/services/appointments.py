"""
Appointment lifecycle.

    pending -> confirmed -> checked_in -> in_progress -> completed
                  |              \\________________________/^
                  +-> no_show
    (any but completed/cancelled) -> cancelled
    (any but completed/cancelled) -> rescheduled -> pending

Each operation re-reads the appointment under its lock, checks the
transition table, writes the new state and commits before releasing it.
"""

import logging
import random
import time
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from sqlmodel import Session, select

from medibook.core.errors import Internal, InvalidTransition, NotFound, ValidationError
from medibook.core.locks import appointment_locks, slot_locks
from medibook.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPaymentStatus,
    AppointmentStatus,
    AppointmentStatusHistory,
    CompleteRequest,
    TimeSlot,
)
from medibook.models.payment import Payment, PaymentStatus
from medibook.models.user import Role, User
from medibook.services.directory import Directory
from medibook.services.notifications import Notifier
from medibook.services.settlement import SettlementEngine
from medibook.services.slot_checker import SlotChecker, slot_key

logger = logging.getLogger(__name__)

S = AppointmentStatus

OPEN_STATUSES: Tuple[AppointmentStatus, ...] = tuple(
    s for s in AppointmentStatus if s not in (S.COMPLETED, S.CANCELLED)
)

TRANSITIONS: Dict[str, Tuple[AppointmentStatus, ...]] = {
    "confirm": (S.PENDING,),
    "check_in": (S.CONFIRMED,),
    "record_vitals": (S.CHECKED_IN,),
    "complete": (S.CHECKED_IN, S.IN_PROGRESS),
    "cancel": OPEN_STATUSES,
    "mark_no_show": (S.CONFIRMED,),
    "reschedule": OPEN_STATUSES,
}

PAYMENT_TO_APPOINTMENT = {
    PaymentStatus.COMPLETED: AppointmentPaymentStatus.PAID,
    PaymentStatus.REFUNDED: AppointmentPaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED: AppointmentPaymentStatus.PARTIALLY_REFUNDED,
}

REFUNDED_STATUSES = (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)


def can_apply(status: AppointmentStatus, operation: str) -> bool:
    return status in TRANSITIONS.get(operation, ())


def generate_appointment_id() -> str:
    return f"APT{int(time.time() * 1000)}{random.randint(0, 9999):04d}"


class AppointmentService:
    def __init__(
        self,
        session: Session,
        settlement: Optional[SettlementEngine] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session = session
        self.settlement = settlement
        self.notifier = notifier or Notifier(session)
        self.directory = Directory(session)
        self.slots = SlotChecker(session)

    # =========================
    # QUERIES
    # =========================

    def get(self, appointment_id: int) -> Appointment:
        appt = self.session.get(Appointment, appointment_id)
        if not appt:
            raise NotFound("Appointment not found")
        return appt

    def get_by_reference(self, reference: str) -> Appointment:
        appt = self.session.exec(
            select(Appointment).where(Appointment.appointment_id == reference)
        ).first()
        if not appt:
            raise NotFound("Appointment not found")
        return appt

    def list(
        self,
        user: User,
        status: Optional[AppointmentStatus] = None,
        doctor_id: Optional[int] = None,
        hospital_id: Optional[int] = None,
        day: Optional[date] = None,
    ) -> List[Appointment]:
        query = select(Appointment)

        # patients see their own visits, doctors their own practice
        if user.role == Role.PATIENT:
            query = query.where(Appointment.patient_id == user.id)
        elif user.role == Role.DOCTOR:
            query = query.where(Appointment.doctor_id == user.id)

        if status is not None:
            query = query.where(Appointment.status == status)
        if doctor_id is not None:
            query = query.where(Appointment.doctor_id == doctor_id)
        if hospital_id is not None:
            query = query.where(Appointment.hospital_id == hospital_id)
        if day is not None:
            query = query.where(Appointment.date == day)

        return list(self.session.exec(query.order_by(Appointment.slot_start.desc())).all())

    def upcoming(self, user: User) -> List[Appointment]:
        query = select(Appointment).where(
            Appointment.status.in_((S.PENDING, S.CONFIRMED)),
            Appointment.slot_start >= datetime.utcnow(),
        )
        if user.role == Role.PATIENT:
            query = query.where(Appointment.patient_id == user.id)
        elif user.role == Role.DOCTOR:
            query = query.where(Appointment.doctor_id == user.id)
        return list(self.session.exec(query.order_by(Appointment.slot_start)).all())

    def history(self, appointment_id: int) -> List[AppointmentStatusHistory]:
        self.get(appointment_id)
        return list(
            self.session.exec(
                select(AppointmentStatusHistory)
                .where(AppointmentStatusHistory.appointment_id == appointment_id)
                .order_by(AppointmentStatusHistory.id)
            ).all()
        )

    # =========================
    # BOOK
    # =========================

    def book(self, data: AppointmentCreate, patient_id: int, booked_by: Optional[int] = None) -> Appointment:
        patient = self.directory.get_patient(patient_id)
        hospital = self.directory.get_hospital(data.hospital_id)
        doctor = self.directory.get_practitioner(data.doctor_id)

        if doctor.hospital_id is not None and doctor.hospital_id != hospital.id:
            raise ValidationError("Practitioner does not work at this hospital")

        if data.department_id is not None:
            department = self.directory.get_department(data.department_id)
            if department.hospital_id != hospital.id:
                raise ValidationError("Department does not belong to this hospital")

        if data.previous_appointment_id is not None:
            previous = self.get(data.previous_appointment_id)
            if previous.patient_id != patient.id:
                raise ValidationError("Previous appointment belongs to another patient")

        start, end = self._check_slot(data.date, data.time_slot)

        with slot_locks.hold(slot_key(doctor.id, data.date)):
            self.directory.lock_practitioner(doctor.id)
            self.slots.ensure_available(doctor.id, start, end)

            appt = Appointment(
                appointment_id=generate_appointment_id(),
                patient_id=patient.id,
                doctor_id=doctor.id,
                hospital_id=hospital.id,
                department_id=data.department_id,
                previous_appointment_id=data.previous_appointment_id,
                date=data.date,
                slot_start=start,
                slot_end=end,
                payment_amount=data.payment_amount,
                appointment_type=data.appointment_type,
                chief_complaint=data.chief_complaint,
                is_urgent=data.is_urgent,
                status=S.PENDING,
                payment_status=AppointmentPaymentStatus.PENDING,
            )
            self.session.add(appt)
            self.session.flush()
            self._record(appt, None, S.PENDING, booked_by, "booked")
            self.session.commit()
            self.session.refresh(appt)

        logger.info(f"Booked {appt.appointment_id} for doctor {doctor.id} at {start:%Y-%m-%d %H:%M}")
        self.notifier.notify(appt.patient_id, "appointment_booked", {"appointment_id": appt.appointment_id})
        return appt

    # =========================
    # TRANSITIONS
    # =========================

    def confirm(self, appointment_id: int, actor_id: Optional[int] = None) -> Appointment:
        with self._transition(appointment_id, "confirm") as appt:
            if appt.payment_status != AppointmentPaymentStatus.PAID:
                raise InvalidTransition(
                    appt.status.value, "confirm", "Appointment must be paid before it can be confirmed"
                )
            appt.confirmed_at = datetime.utcnow()
            self._move(appt, S.CONFIRMED, actor_id)
            self._save(appt)

        self.notifier.notify(appt.patient_id, "appointment_confirmed", {"appointment_id": appt.appointment_id})
        return appt

    def check_in(self, appointment_id: int, actor_id: Optional[int] = None, vitals: Optional[dict] = None) -> Appointment:
        with self._transition(appointment_id, "check_in") as appt:
            appt.checked_in_at = datetime.utcnow()
            if vitals:
                appt.vitals = self._stamp_vitals(vitals, actor_id)
            self._move(appt, S.CHECKED_IN, actor_id)
            self._save(appt)
        return appt

    def record_vitals(self, appointment_id: int, vitals: dict, actor_id: Optional[int] = None) -> Appointment:
        if not vitals:
            raise ValidationError("Vitals are required")

        with self._transition(appointment_id, "record_vitals") as appt:
            appt.vitals = self._stamp_vitals(vitals, actor_id)
            self._move(appt, S.IN_PROGRESS, actor_id)
            self._save(appt)
        return appt

    def complete(self, appointment_id: int, data: CompleteRequest, actor_id: Optional[int] = None) -> Appointment:
        with self._transition(appointment_id, "complete") as appt:
            appt.completed_at = datetime.utcnow()
            if data.checkup_notes:
                appt.checkup_notes = data.checkup_notes
            if data.diagnosis:
                appt.diagnosis = data.diagnosis
            if data.prescriptions:
                appt.prescriptions = [p.model_dump() for p in data.prescriptions]
            self._move(appt, S.COMPLETED, actor_id)
            self._save(appt)
        return appt

    def mark_no_show(self, appointment_id: int, actor_id: Optional[int] = None) -> Appointment:
        with self._transition(appointment_id, "mark_no_show") as appt:
            self._move(appt, S.NO_SHOW, actor_id)
            self._save(appt)
        return appt

    def cancel(self, appointment_id: int, reason: str, cancelled_by: Optional[int] = None) -> Appointment:
        if not reason:
            raise ValidationError("A cancellation reason is required")

        refunded: Optional[Payment] = None

        with self._transition(appointment_id, "cancel") as appt:
            if appt.payment_status == AppointmentPaymentStatus.PAID:
                refunded = self._refund(appt, reason, cancelled_by)
                self._apply_payment_fields(appt, refunded)

            appt.cancelled_at = datetime.utcnow()
            appt.cancelled_by = cancelled_by
            appt.cancellation_reason = reason
            self._move(appt, S.CANCELLED, cancelled_by, reason)
            self._save(appt)

        self.notifier.notify(
            appt.patient_id, "appointment_cancelled",
            {"appointment_id": appt.appointment_id, "reason": reason},
        )
        if refunded is not None:
            self._notify_refund(appt, refunded)
        return appt

    def reschedule(
        self,
        appointment_id: int,
        new_date: date,
        time_slot: TimeSlot,
        actor_id: Optional[int] = None,
    ) -> Appointment:
        start, end = self._check_slot(new_date, time_slot)

        with self._transition(appointment_id, "reschedule") as appt:
            with slot_locks.hold(slot_key(appt.doctor_id, new_date)):
                self.directory.lock_practitioner(appt.doctor_id)
                self.slots.ensure_available(appt.doctor_id, start, end, exclude_appointment_id=appt.id)

                note = f"moved from {appt.slot_start:%Y-%m-%d %H:%M} to {start:%Y-%m-%d %H:%M}"
                appt.date = new_date
                appt.slot_start = start
                appt.slot_end = end
                appt.reschedule_count += 1
                appt.confirmed_at = None
                appt.checked_in_at = None

                # rescheduled is only a marker; the visit needs confirming again
                self._move(appt, S.RESCHEDULED, actor_id, note)
                self._move(appt, S.PENDING, actor_id)
                self._save(appt)

        self.notifier.notify(
            appt.patient_id, "appointment_rescheduled",
            {"appointment_id": appt.appointment_id, "slot_start": start.isoformat()},
        )
        return appt

    # =========================
    # PAYMENT REACTION
    # =========================

    def apply_payment(self, appointment_id: int, payment: Payment) -> Appointment:
        """Mirror a payment's status onto its appointment.

        A payment that settles after its appointment was cancelled is
        refunded straight away.
        """
        refunded: Optional[Payment] = None

        with appointment_locks.hold(str(appointment_id)):
            appt = self._load(appointment_id)
            try:
                if appt.status == S.CANCELLED and payment.status == PaymentStatus.COMPLETED:
                    logger.warning(
                        f"Payment {payment.transaction_id} settled after {appt.appointment_id} was cancelled"
                    )
                    payment = refunded = self._settlement().process_refund(
                        payment.id, "Appointment cancelled before payment settled", None
                    )
                self._apply_payment_fields(appt, payment)
                self._save(appt)
            except Exception:
                self.session.rollback()
                raise

        if payment.status == PaymentStatus.COMPLETED:
            self.notifier.notify(appt.patient_id, "payment_completed", {"transaction_id": payment.transaction_id})
        elif payment.status == PaymentStatus.FAILED:
            self.notifier.notify(appt.patient_id, "payment_failed", {"transaction_id": payment.transaction_id})
        if refunded is not None:
            self._notify_refund(appt, refunded)
        return appt

    # =========================
    # INTERNALS
    # =========================

    @contextmanager
    def _transition(self, appointment_id: int, operation: str) -> Iterator[Appointment]:
        with appointment_locks.hold(str(appointment_id)):
            appt = self._load(appointment_id)
            try:
                if not can_apply(appt.status, operation):
                    raise InvalidTransition(appt.status.value, operation)
                yield appt
            except Exception:
                self.session.rollback()
                raise

    def _load(self, appointment_id: int) -> Appointment:
        appt = self.session.exec(
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not appt:
            raise NotFound("Appointment not found")
        return appt

    def _move(self, appt: Appointment, new_status: AppointmentStatus, actor_id: Optional[int], note: Optional[str] = None):
        old_status = appt.status
        appt.status = new_status
        self._record(appt, old_status, new_status, actor_id, note)
        logger.info(f"{appt.appointment_id}: {old_status.value} -> {new_status.value}")

    def _record(self, appt, old_status, new_status, actor_id, note=None):
        self.session.add(
            AppointmentStatusHistory(
                appointment_id=appt.id,
                from_status=old_status,
                status=new_status,
                changed_by=actor_id,
                note=note,
            )
        )

    def _save(self, appt: Appointment) -> None:
        appt.updated_at = datetime.utcnow()
        self.session.add(appt)
        self.session.commit()
        self.session.refresh(appt)

    def _check_slot(self, day: date, time_slot: TimeSlot) -> Tuple[datetime, datetime]:
        if time_slot.start >= time_slot.end:
            raise ValidationError("Time slot start must be before its end")
        if time_slot.start.date() != day:
            raise ValidationError("Time slot must start on the appointment date")
        if time_slot.end > datetime.combine(day + timedelta(days=1), datetime.min.time()):
            # bookings are serialized per practitioner and day
            raise ValidationError("Time slot must end by midnight of the appointment date")
        return time_slot.start, time_slot.end

    def _stamp_vitals(self, vitals: dict, actor_id: Optional[int]) -> dict:
        stamped = dict(vitals)
        stamped["recorded_by"] = actor_id
        stamped["recorded_at"] = datetime.utcnow().isoformat()
        return stamped

    def _settlement(self) -> SettlementEngine:
        if self.settlement is None:
            raise Internal("Settlement engine is not configured")
        return self.settlement

    def _refund(self, appt: Appointment, reason: str, refunded_by: Optional[int]) -> Payment:
        settlement = self._settlement()
        payment = settlement.active_payment_for(appt.id)
        if payment is not None and payment.status in REFUNDED_STATUSES:
            # refunded earlier by a cancel that never committed
            return payment
        if payment is None or payment.status != PaymentStatus.COMPLETED:
            raise NotFound(f"No completed payment found for {appt.appointment_id}")
        return settlement.process_refund(payment.id, reason, refunded_by)

    def _apply_payment_fields(self, appt: Appointment, payment: Payment) -> None:
        appt.payment_status = PAYMENT_TO_APPOINTMENT.get(payment.status, AppointmentPaymentStatus.PENDING)
        appt.transaction_id = payment.transaction_id
        if payment.status == PaymentStatus.FAILED:
            appt.wallet_credit_used = 0
        else:
            appt.wallet_credit_used = payment.wallet_amount_used

    def _notify_refund(self, appt: Appointment, payment: Payment) -> None:
        self.notifier.notify(
            appt.patient_id,
            "payment_refunded",
            {
                "appointment_id": appt.appointment_id,
                "refund_amount": str(payment.refund_amount),
                "wallet_refund_amount": str(payment.wallet_refund_amount),
                "gateway_refund_amount": str(payment.gateway_refund_amount),
            },
        )
