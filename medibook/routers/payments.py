import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import ValidationError as SchemaError
from sqlmodel import Session

from medibook.core.config import get_settings
from medibook.core.errors import ValidationError
from medibook.core.permissions import Action
from medibook.core.security import ensure_patient_scope, require
from medibook.database import get_session
from medibook.dependencies import get_appointment_service, get_settlement
from medibook.models.payment import Payment, PaymentProcess, PaymentVerify, RefundRequest
from medibook.models.user import Role, User
from medibook.services.appointments import AppointmentService
from medibook.services.gateway import GatewayClient, get_gateway, verify_signature
from medibook.services.reconciliation import Reconciler
from medibook.services.settlement import SettlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# =========================
# PROCESS
# =========================
@router.post("/process", response_model=Payment, status_code=status.HTTP_201_CREATED)
def process_payment(
    data: PaymentProcess,
    settlement: SettlementEngine = Depends(get_settlement),
    appointments: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.PROCESS_PAYMENT)),
):
    if current_user.role == Role.PATIENT:
        patient_id = current_user.id
    elif data.patient_id is None:
        raise ValidationError("patient_id is required when paying on behalf of a patient")
    else:
        patient_id = data.patient_id

    payment = settlement.process_payment(
        data.appointment_id,
        patient_id,
        data.total_amount,
        data.wallet_amount_to_use,
    )
    appointments.apply_payment(payment.appointment_id, payment)
    return settlement.get(payment.id)


# =========================
# GATEWAY WEBHOOK
# =========================
async def raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/verify", response_model=Payment)
def verify_payment(
    body: bytes = Depends(raw_body),
    x_gateway_signature: Optional[str] = Header(None),
    settlement: SettlementEngine = Depends(get_settlement),
    appointments: AppointmentService = Depends(get_appointment_service),
):
    if not verify_signature(body, x_gateway_signature, get_settings().GATEWAY_WEBHOOK_SECRET):
        logger.warning("Rejected gateway callback with a missing or invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid gateway signature",
        )

    try:
        data = PaymentVerify.model_validate_json(body)
    except SchemaError as exc:
        raise ValidationError(f"Malformed gateway callback: {exc.error_count()} error(s)") from exc

    payment = settlement.verify_payment(data.transaction_id, data.provider_transaction_id)
    # the callback's own status is informational; the gateway is always re-asked
    if data.status is not None and data.status != payment.status.value:
        logger.warning(
            f"Gateway callback for {data.transaction_id} reported '{data.status}', "
            f"verified status is '{payment.status.value}'"
        )
    elif data.status is not None:
        logger.info(f"Gateway callback for {data.transaction_id} reported '{data.status}'")
    appointments.apply_payment(payment.appointment_id, payment)
    return settlement.get(payment.id)


# =========================
# REFUND
# =========================
@router.post("/{payment_id}/refund", response_model=Payment)
def refund_payment(
    payment_id: int,
    data: RefundRequest,
    settlement: SettlementEngine = Depends(get_settlement),
    appointments: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.REFUND_PAYMENT)),
):
    payment = settlement.process_refund(payment_id, data.reason, current_user.id, data.amount)
    appointments.apply_payment(payment.appointment_id, payment)
    return settlement.get(payment.id)


# =========================
# RECONCILIATION
# =========================
@router.post("/reconcile")
def reconcile_payments(
    older_than_minutes: Optional[int] = Query(None, ge=0),
    session: Session = Depends(get_session),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require(Action.RECONCILE_PAYMENTS)),
):
    older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
    summary = Reconciler(session, gateway).sweep(older_than)
    logger.info(f"Reconciliation requested by user {current_user.id}: {summary}")
    return summary


# =========================
# QUERIES
# =========================
@router.get("/transaction/{transaction_id}", response_model=Payment)
def get_by_transaction(
    transaction_id: str,
    settlement: SettlementEngine = Depends(get_settlement),
    current_user: User = Depends(require(Action.VIEW_PAYMENTS)),
):
    payment = settlement.get_by_transaction(transaction_id)
    ensure_patient_scope(current_user, payment.patient_id)
    return payment


@router.get("/patient/{patient_id}", response_model=List[Payment])
def list_for_patient(
    patient_id: int,
    settlement: SettlementEngine = Depends(get_settlement),
    current_user: User = Depends(require(Action.VIEW_PAYMENTS)),
):
    ensure_patient_scope(current_user, patient_id)
    return settlement.list_for_patient(patient_id)


@router.get("/appointment/{appointment_id}", response_model=List[Payment])
def list_for_appointment(
    appointment_id: int,
    settlement: SettlementEngine = Depends(get_settlement),
    appointments: AppointmentService = Depends(get_appointment_service),
    current_user: User = Depends(require(Action.VIEW_PAYMENTS)),
):
    ensure_patient_scope(current_user, appointments.get(appointment_id).patient_id)
    return settlement.list_for_appointment(appointment_id)


@router.get("/{payment_id}", response_model=Payment)
def get_payment(
    payment_id: int,
    settlement: SettlementEngine = Depends(get_settlement),
    current_user: User = Depends(require(Action.VIEW_PAYMENTS)),
):
    payment = settlement.get(payment_id)
    ensure_patient_scope(current_user, payment.patient_id)
    return payment
