"""
Payment settlement.

A payment is a saga over two systems, the wallet ledger and the external
gateway. Each step is committed before the next one starts:

    pending -> wallet_reserved -> gateway_requested -> completed
                      \\                 \\
                       +-> compensating -+-> failed

so a crash leaves the payment in a state ``resume`` can pick up from.

Refunds split the refunded amount 10% to the wallet (credited first, always)
and 90% back through the gateway (best effort, failures are recorded for
manual follow-up).

This module never writes appointments; callers react to the payment status.
"""

import logging
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from sqlmodel import Session, select

from medibook.core.config import get_settings
from medibook.core.errors import (
    Conflict,
    GatewayFailure,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from medibook.core.locks import payment_locks
from medibook.models.appointment import Appointment, AppointmentPaymentStatus, AppointmentStatus
from medibook.models.payment import (
    IN_FLIGHT_SAGA_STATES,
    GatewayRefundStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    SagaState,
)
from medibook.models.wallet import TransactionType
from medibook.services.gateway import GatewayClient, GatewayError
from medibook.services.wallet_ledger import WalletLedger, to_money

logger = logging.getLogger(__name__)

WALLET_REFUND_SHARE = Decimal("0.10")

# gateway answers that mean "not settled yet" rather than failure
PENDING_GATEWAY_STATUSES = ("pending", "processing")

UNPAYABLE_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW)


def split_refund(amount: Decimal, unit: Decimal = Decimal("1")) -> Tuple[Decimal, Decimal]:
    """Wallet share (10%, half-up to `unit`) and gateway share (the remainder)."""
    amount = to_money(amount)
    wallet_share = (amount * WALLET_REFUND_SHARE / unit).quantize(Decimal("1"), rounding=ROUND_HALF_UP) * unit
    wallet_share = to_money(wallet_share)
    return wallet_share, amount - wallet_share


def classify_method(total: Decimal, wallet_amount: Decimal) -> PaymentMethod:
    if wallet_amount == 0:
        return PaymentMethod.GATEWAY
    if wallet_amount == total:
        return PaymentMethod.WALLET
    return PaymentMethod.MIXED


def new_transaction_id() -> str:
    return f"TXN{uuid.uuid4().hex.upper()}"


class SettlementEngine:
    def __init__(
        self,
        session: Session,
        gateway: GatewayClient,
        ledger: Optional[WalletLedger] = None,
        refund_unit: Optional[Decimal] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.ledger = ledger or WalletLedger(session)
        self.refund_unit = refund_unit or get_settings().REFUND_ROUNDING_UNIT

    # =========================
    # QUERIES
    # =========================

    def get(self, payment_id: int) -> Payment:
        payment = self.session.get(Payment, payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def get_by_transaction(self, transaction_id: str) -> Payment:
        payment = self.session.exec(
            select(Payment).where(Payment.transaction_id == transaction_id)
        ).first()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def list_for_patient(self, patient_id: int) -> List[Payment]:
        return list(
            self.session.exec(
                select(Payment)
                .where(Payment.patient_id == patient_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            ).all()
        )

    def list_for_appointment(self, appointment_id: int) -> List[Payment]:
        return list(
            self.session.exec(
                select(Payment)
                .where(Payment.appointment_id == appointment_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            ).all()
        )

    def active_payment_for(self, appointment_id: int) -> Optional[Payment]:
        """The appointment's non-failed payment, if any (there is at most one)."""
        return self.session.exec(
            select(Payment).where(
                Payment.appointment_id == appointment_id,
                Payment.status != PaymentStatus.FAILED,
            )
        ).first()

    # =========================
    # PROCESS
    # =========================

    def process_payment(
        self,
        appointment_id: int,
        patient_id: int,
        total_amount,
        wallet_amount_to_use=Decimal("0"),
    ) -> Payment:
        total = to_money(total_amount)
        wallet_amount = to_money(wallet_amount_to_use or 0)

        if total <= 0:
            raise ValidationError("Total amount must be greater than zero")
        if wallet_amount < 0 or wallet_amount > total:
            raise ValidationError("Wallet amount must be between zero and the total amount")

        appointment = self.session.get(Appointment, appointment_id)
        if not appointment:
            raise NotFound("Appointment not found")
        if appointment.patient_id != patient_id:
            raise ValidationError("Appointment belongs to another patient")
        if appointment.status in UNPAYABLE_STATUSES:
            raise InvalidTransition(appointment.status.value, "process_payment")
        if appointment.payment_status != AppointmentPaymentStatus.PENDING:
            raise Conflict("Appointment is already paid")
        if to_money(appointment.payment_amount) != total:
            raise ValidationError(
                f"Total amount {total} does not match the appointment fee {appointment.payment_amount}"
            )

        with payment_locks.hold(f"appointment:{appointment_id}"):
            if self.active_payment_for(appointment_id) is not None:
                raise Conflict("An active payment already exists for this appointment")

            # fail fast, before anything is written
            if wallet_amount > 0:
                available = self.ledger.get_balance(patient_id)
                if available < wallet_amount:
                    raise InsufficientBalance(available=available, requested=wallet_amount)

            payment = Payment(
                appointment_id=appointment_id,
                patient_id=patient_id,
                amount=total,
                method=classify_method(total, wallet_amount),
                wallet_amount_used=wallet_amount,
                gateway_amount_paid=total - wallet_amount,
                transaction_id=new_transaction_id(),
            )
            self.session.add(payment)
            self.session.commit()
            self.session.refresh(payment)
            logger.info(
                f"Payment {payment.transaction_id} created for appointment {appointment.appointment_id}: "
                f"total={total} wallet={wallet_amount} method={payment.method.value}"
            )

            with payment_locks.hold(f"payment:{payment.id}"):
                return self._run_saga(payment, appointment.appointment_id)

    def _run_saga(self, payment: Payment, appointment_ref: str) -> Payment:
        if payment.wallet_amount_used > 0:
            # saga state and the debit are committed together by the ledger
            self._touch(payment, saga_state=SagaState.WALLET_RESERVED)
            try:
                self.ledger.debit(
                    payment.patient_id,
                    payment.wallet_amount_used,
                    f"Payment for appointment {appointment_ref}",
                    payment.appointment_id,
                    payment.id,
                )
            except InsufficientBalance:
                self.session.rollback()
                self._fail(payment, "Insufficient wallet balance")
                raise

        if payment.gateway_amount_paid == 0:
            return self._complete(payment)

        self._touch(payment, saga_state=SagaState.GATEWAY_REQUESTED, status=PaymentStatus.PROCESSING)
        self.session.commit()

        try:
            checkout = self.gateway.initiate(
                payment.gateway_amount_paid,
                payment.transaction_id,
                f"Appointment payment - {appointment_ref}",
            )
        except GatewayError as exc:
            logger.warning(f"Gateway charge for {payment.transaction_id} failed: {exc}")
            self.compensate(payment, f"Gateway charge failed: {exc}")
            raise GatewayFailure("Payment gateway failed, wallet amount has been restored") from exc

        payment.provider_transaction_id = checkout.provider_transaction_id
        payment.checkout_reference = checkout.checkout_reference
        self._touch(payment)
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Payment {payment.transaction_id} awaiting gateway ({payment.provider_transaction_id})")
        return payment

    # =========================
    # VERIFY (gateway callback)
    # =========================

    def verify_payment(self, transaction_id: str, provider_transaction_id: Optional[str] = None) -> Payment:
        payment = self.get_by_transaction(transaction_id)

        with payment_locks.hold(f"payment:{payment.id}"):
            payment = self._reload(payment.id)

            if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                return payment

            provider_id = payment.provider_transaction_id or provider_transaction_id
            if not provider_id:
                raise ValidationError("Payment has no gateway transaction to verify")

            return self._settle_with_gateway(payment, provider_id)

    def _settle_with_gateway(self, payment: Payment, provider_id: str) -> Payment:
        try:
            result = self.gateway.verify(provider_id)
        except GatewayError as exc:
            logger.warning(f"Gateway verification for {payment.transaction_id} failed: {exc}")
            self.compensate(payment, f"Gateway verification failed: {exc}")
            raise GatewayFailure("Payment gateway failed, wallet amount has been restored") from exc

        payment.provider_transaction_id = provider_id
        if result.success:
            return self._complete(payment)

        if result.status in PENDING_GATEWAY_STATUSES:
            self._touch(payment)
            self.session.commit()
            logger.info(f"Payment {payment.transaction_id} still '{result.status}' at the gateway")
            return payment

        self.compensate(payment, f"Gateway reported status '{result.status}'")
        return payment

    # =========================
    # REFUND
    # =========================

    def process_refund(
        self,
        payment_id: int,
        reason: str,
        refunded_by: Optional[int] = None,
        amount=None,
    ) -> Payment:
        if not reason:
            raise ValidationError("A refund reason is required")

        with payment_locks.hold(f"payment:{payment_id}"):
            payment = self._reload(payment_id)

            if payment.status != PaymentStatus.COMPLETED:
                raise InvalidTransition(
                    payment.status.value, "refund", "Only completed payments can be refunded"
                )

            refund_amount = to_money(amount) if amount is not None else to_money(payment.amount)
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise ValidationError("Refund amount must be positive and at most the payment amount")

            wallet_share, gateway_share = split_refund(refund_amount, self.refund_unit)

            payment.status = (
                PaymentStatus.REFUNDED if refund_amount == payment.amount else PaymentStatus.PARTIALLY_REFUNDED
            )
            payment.refund_amount = refund_amount
            payment.wallet_refund_amount = wallet_share
            payment.gateway_refund_amount = gateway_share
            payment.refund_reason = reason
            payment.refunded_at = datetime.utcnow()
            payment.refunded_by = refunded_by
            payment.gateway_refund_status = GatewayRefundStatus.NOT_REQUIRED if gateway_share == 0 else None
            self._touch(payment, saga_state=SagaState.REFUNDED)

            # wallet first: the patient's share never waits on the gateway
            if wallet_share > 0:
                self.ledger.credit(
                    payment.patient_id,
                    wallet_share,
                    f"Refund credit for appointment cancellation - {reason}",
                    payment.appointment_id,
                    payment.id,
                )
            else:
                self.session.commit()

            if gateway_share > 0:
                self._refund_through_gateway(payment, gateway_share, reason)

            self.session.refresh(payment)
            logger.info(
                f"Payment {payment.transaction_id} {payment.status.value}: "
                f"wallet={wallet_share} gateway={gateway_share} ({payment.gateway_refund_status.value})"
            )
            return payment

    def _refund_through_gateway(self, payment: Payment, amount: Decimal, reason: str) -> None:
        if not payment.provider_transaction_id:
            payment.gateway_refund_status = GatewayRefundStatus.MANUAL_REVIEW
            logger.warning(
                f"Payment {payment.transaction_id} has no gateway leg; "
                f"{amount} must be refunded manually"
            )
        else:
            try:
                result = self.gateway.refund(payment.provider_transaction_id, amount, reason)
            except GatewayError as exc:
                payment.gateway_refund_status = GatewayRefundStatus.FAILED
                logger.warning(
                    f"Gateway refund of {amount} for {payment.transaction_id} failed, "
                    f"manual follow-up required: {exc}"
                )
            else:
                if result.success:
                    payment.gateway_refund_status = GatewayRefundStatus.SUCCEEDED
                    payment.gateway_refund_reference = result.refund_reference
                else:
                    payment.gateway_refund_status = GatewayRefundStatus.FAILED
                    logger.warning(
                        f"Gateway declined refund of {amount} for {payment.transaction_id}, "
                        f"manual follow-up required"
                    )

        self._touch(payment)
        self.session.commit()

    # =========================
    # COMPENSATION & RECOVERY
    # =========================

    def compensate(self, payment: Payment, reason: str) -> Payment:
        """Give back any wallet money this payment took, then mark it failed.

        Safe to run more than once: the credit-back is written only if the
        ledger holds a debit and no credit for this payment.
        """
        self._touch(payment, saga_state=SagaState.COMPENSATING)
        payment.failure_reason = reason
        self.session.commit()

        if self.wallet_debited(payment) and not self.wallet_restored(payment):
            self.ledger.credit(
                payment.patient_id,
                payment.wallet_amount_used,
                "Refund - payment failed",
                payment.appointment_id,
                payment.id,
            )
            logger.info(f"Restored {payment.wallet_amount_used} to wallet for {payment.transaction_id}")

        return self._fail(payment, reason)

    def wallet_debited(self, payment: Payment) -> bool:
        return self.ledger.has_entry(payment.id, TransactionType.DEBIT)

    def wallet_restored(self, payment: Payment) -> bool:
        return self.ledger.has_entry(payment.id, TransactionType.CREDIT)

    def resume(self, payment_id: int) -> str:
        """Drive a payment left mid-saga to a final state. Returns the outcome."""
        with payment_locks.hold(f"payment:{payment_id}"):
            payment = self._reload(payment_id)
            state = payment.saga_state

            if state not in IN_FLIGHT_SAGA_STATES:
                return "skipped"

            if state == SagaState.PENDING:
                if self.wallet_debited(payment):
                    self.compensate(payment, "Recovered: abandoned after wallet debit")
                    return "compensated"
                self._fail(payment, "Recovered: abandoned before any funds moved")
                return "failed"

            if state == SagaState.WALLET_RESERVED:
                if payment.gateway_amount_paid == 0:
                    self._complete(payment)
                    return "completed"
                self.compensate(payment, "Recovered: gateway was never called")
                return "compensated"

            if state == SagaState.GATEWAY_REQUESTED:
                if not payment.provider_transaction_id and not self._recover_checkout(payment):
                    return "compensated"
                try:
                    self._settle_with_gateway(payment, payment.provider_transaction_id)
                except GatewayFailure:
                    return "compensated"
                if payment.status == PaymentStatus.COMPLETED:
                    return "completed"
                if payment.status == PaymentStatus.FAILED:
                    return "compensated"
                return "awaiting_gateway"

            self.compensate(payment, payment.failure_reason or "Recovered: compensation resumed")
            return "compensated"

    def _recover_checkout(self, payment: Payment) -> bool:
        """Ask the gateway again for a charge whose answer was never stored.

        The charge request may have reached the gateway before the crash, so
        it is repeated with the same correlation id, which the gateway
        deduplicates. Compensates and returns False when the gateway cannot
        be reached.
        """
        appointment = self.session.get(Appointment, payment.appointment_id)
        reference = appointment.appointment_id if appointment else str(payment.appointment_id)
        try:
            checkout = self.gateway.initiate(
                payment.gateway_amount_paid,
                payment.transaction_id,
                f"Appointment payment - {reference}",
            )
        except GatewayError as exc:
            logger.warning(f"Could not recover gateway charge for {payment.transaction_id}: {exc}")
            self.compensate(payment, f"Recovered: gateway charge could not be confirmed: {exc}")
            return False

        payment.provider_transaction_id = checkout.provider_transaction_id
        payment.checkout_reference = checkout.checkout_reference
        self._touch(payment)
        self.session.commit()
        logger.info(f"Recovered gateway charge {payment.provider_transaction_id} for {payment.transaction_id}")
        return True

    # =========================
    # INTERNALS
    # =========================

    def _reload(self, payment_id: int) -> Payment:
        payment = self.session.exec(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def _touch(self, payment: Payment, saga_state: Optional[SagaState] = None, status: Optional[PaymentStatus] = None):
        if saga_state is not None:
            payment.saga_state = saga_state
        if status is not None:
            payment.status = status
        payment.updated_at = datetime.utcnow()
        self.session.add(payment)

    def _complete(self, payment: Payment) -> Payment:
        self._touch(payment, saga_state=SagaState.COMPLETED, status=PaymentStatus.COMPLETED)
        payment.completed_at = datetime.utcnow()
        payment.failure_reason = None
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Payment {payment.transaction_id} completed")
        return payment

    def _fail(self, payment: Payment, reason: str) -> Payment:
        self._touch(payment, saga_state=SagaState.FAILED, status=PaymentStatus.FAILED)
        payment.failure_reason = reason
        self.session.commit()
        self.session.refresh(payment)
        logger.info(f"Payment {payment.transaction_id} failed: {reason}")
        return payment
