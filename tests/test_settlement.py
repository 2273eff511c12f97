from decimal import Decimal

import pytest

from medibook.core.errors import (
    Conflict,
    GatewayFailure,
    InsufficientBalance,
    InvalidTransition,
    ValidationError,
)
from medibook.models.payment import GatewayRefundStatus, PaymentMethod, PaymentStatus, SagaState
from medibook.models.wallet import TransactionType
from medibook.services.settlement import SettlementEngine, classify_method, split_refund

from tests.helpers import FEE


# =========================
# PURE HELPERS
# =========================

@pytest.mark.parametrize(
    "amount, wallet, gateway",
    [
        ("1000", "100", "900"),
        ("1005", "101", "904"),   # 100.5 rounds half up
        ("1004", "100", "904"),
        ("15", "2", "13"),
        ("3.33", "0", "3.33"),
    ],
)
def test_split_refund_wallet_share_rounds_half_up(amount, wallet, gateway):
    wallet_share, gateway_share = split_refund(Decimal(amount))

    assert wallet_share == Decimal(wallet)
    assert gateway_share == Decimal(gateway)
    assert wallet_share + gateway_share == Decimal(amount)


def test_split_refund_with_cent_rounding():
    assert split_refund(Decimal("33.35"), Decimal("0.01")) == (Decimal("3.34"), Decimal("30.01"))


def test_classify_method():
    assert classify_method(FEE, Decimal("0")) == PaymentMethod.GATEWAY
    assert classify_method(FEE, FEE) == PaymentMethod.WALLET
    assert classify_method(FEE, Decimal("1")) == PaymentMethod.MIXED


# =========================
# PROCESS
# =========================

def test_mixed_payment_debits_wallet_then_awaits_gateway(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()

    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))

    assert payment.method == PaymentMethod.MIXED
    assert payment.status == PaymentStatus.PROCESSING
    assert payment.saga_state == SagaState.GATEWAY_REQUESTED
    assert payment.transaction_id.startswith("TXN")
    assert payment.provider_transaction_id.startswith("FAKE")
    assert ledger.get_balance(seed.patient.id) == Decimal("200.00")
    assert gateway.calls_to("initiate") == [(Decimal("700.00"), payment.transaction_id, f"Appointment payment - {appt.appointment_id}")]

    payment = settlement.verify_payment(payment.transaction_id)

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.saga_state == SagaState.COMPLETED
    assert payment.completed_at is not None


def test_gateway_failure_restores_wallet(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()
    gateway.fail_on.add("initiate")

    with pytest.raises(GatewayFailure):
        settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))

    payment = settlement.list_for_appointment(appt.id)[0]
    assert payment.status == PaymentStatus.FAILED
    assert payment.saga_state == SagaState.FAILED
    assert "initiate" in payment.failure_reason
    assert ledger.get_balance(seed.patient.id) == Decimal("500.00")
    assert ledger.reconstruct_balance(seed.patient.id) == Decimal("500.00")


def test_wallet_only_payment_completes_without_gateway(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, FEE, "Top-up")
    appt = book()

    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, FEE)

    assert payment.method == PaymentMethod.WALLET
    assert payment.status == PaymentStatus.COMPLETED
    assert gateway.calls == []
    assert ledger.get_balance(seed.patient.id) == Decimal("0.00")


def test_insufficient_wallet_fails_before_anything_is_written(book, settlement, ledger, seed):
    ledger.credit(seed.patient.id, Decimal("100"), "Top-up")
    appt = book()

    with pytest.raises(InsufficientBalance):
        settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))

    assert settlement.list_for_appointment(appt.id) == []
    assert ledger.get_balance(seed.patient.id) == Decimal("100.00")


@pytest.mark.parametrize(
    "total, wallet",
    [(Decimal("0"), Decimal("0")), (FEE, Decimal("-1")), (FEE, Decimal("1000.01"))],
)
def test_amounts_are_validated(book, settlement, seed, total, wallet):
    appt = book()
    with pytest.raises(ValidationError):
        settlement.process_payment(appt.id, seed.patient.id, total, wallet)


def test_total_must_match_the_fee(book, settlement, seed):
    appt = book()
    with pytest.raises(ValidationError):
        settlement.process_payment(appt.id, seed.patient.id, Decimal("999"), Decimal("0"))


def test_only_one_active_payment_per_appointment(book, settlement, seed):
    appt = book()
    settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))

    with pytest.raises(Conflict):
        settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))


def test_failed_attempt_can_be_retried(book, settlement, gateway, seed):
    appt = book()
    gateway.fail_on.add("initiate")
    with pytest.raises(GatewayFailure):
        settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))

    gateway.fail_on.clear()
    retry = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))

    assert retry.status == PaymentStatus.PROCESSING
    assert len(settlement.list_for_appointment(appt.id)) == 2


def test_cancelled_appointment_cannot_be_paid(book, appointments, settlement, seed):
    appt = book()
    appointments.cancel(appt.id, "Not needed")

    with pytest.raises(InvalidTransition):
        settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))


def test_cannot_pay_for_someone_elses_appointment(book, settlement, seed):
    appt = book()
    with pytest.raises(ValidationError):
        settlement.process_payment(appt.id, seed.other_patient.id, FEE, Decimal("0"))


# =========================
# VERIFY
# =========================

def test_verify_is_idempotent_once_completed(paid, settlement, gateway):
    _, payment = paid()
    verifications = len(gateway.calls_to("verify"))

    again = settlement.verify_payment(payment.transaction_id)

    assert again.status == PaymentStatus.COMPLETED
    assert len(gateway.calls_to("verify")) == verifications


def test_declined_at_gateway_compensates(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))
    gateway.verify_status = "declined"

    payment = settlement.verify_payment(payment.transaction_id)

    assert payment.status == PaymentStatus.FAILED
    assert ledger.get_balance(seed.patient.id) == Decimal("500.00")


def test_still_pending_at_gateway_stays_in_flight(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))
    gateway.verify_status = "pending"

    payment = settlement.verify_payment(payment.transaction_id)

    assert payment.status == PaymentStatus.PROCESSING
    assert ledger.get_balance(seed.patient.id) == Decimal("200.00")


def test_verify_timeout_compensates_and_raises(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))
    gateway.fail_on.add("verify")

    with pytest.raises(GatewayFailure):
        settlement.verify_payment(payment.transaction_id)

    assert settlement.get(payment.id).status == PaymentStatus.FAILED
    assert ledger.get_balance(seed.patient.id) == Decimal("500.00")


# =========================
# REFUND
# =========================

def test_full_refund_splits_ten_ninety(paid, settlement, ledger, gateway, seed):
    _, payment = paid()

    payment = settlement.process_refund(payment.id, "Cancelled", seed.receptionist.id)

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.saga_state == SagaState.REFUNDED
    assert payment.refund_amount == Decimal("1000.00")
    assert payment.wallet_refund_amount == Decimal("100.00")
    assert payment.gateway_refund_amount == Decimal("900.00")
    assert payment.gateway_refund_status == GatewayRefundStatus.SUCCEEDED
    assert payment.gateway_refund_reference.startswith("REF")
    assert payment.refunded_by == seed.receptionist.id
    assert ledger.get_balance(seed.patient.id) == Decimal("300.00")


def test_wallet_credit_lands_before_gateway_refund(paid, settlement, ledger, gateway, seed):
    _, payment = paid()
    gateway.fail_on.add("refund")

    payment = settlement.process_refund(payment.id, "Cancelled")

    assert payment.status == PaymentStatus.REFUNDED
    assert payment.gateway_refund_status == GatewayRefundStatus.FAILED
    assert ledger.get_balance(seed.patient.id) == Decimal("300.00")


def test_partial_refund(paid, settlement, ledger, seed):
    _, payment = paid()

    payment = settlement.process_refund(payment.id, "Partial", amount=Decimal("250"))

    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.wallet_refund_amount == Decimal("25.00")
    assert payment.gateway_refund_amount == Decimal("225.00")


def test_refund_amount_must_be_within_payment(paid, settlement):
    _, payment = paid()
    with pytest.raises(ValidationError):
        settlement.process_refund(payment.id, "Too much", amount=Decimal("1000.01"))


def test_cannot_refund_twice(paid, settlement):
    _, payment = paid()
    settlement.process_refund(payment.id, "Once")

    with pytest.raises(InvalidTransition) as exc:
        settlement.process_refund(payment.id, "Twice")
    assert exc.value.current_state == "refunded"


def test_cannot_refund_an_unsettled_payment(book, settlement, seed):
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("0"))

    with pytest.raises(InvalidTransition):
        settlement.process_refund(payment.id, "Too early")


def test_wallet_only_payment_refund_needs_manual_review(book, settlement, ledger, gateway, seed):
    ledger.credit(seed.patient.id, FEE, "Top-up")
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, FEE)

    payment = settlement.process_refund(payment.id, "Cancelled")

    assert payment.gateway_refund_status == GatewayRefundStatus.MANUAL_REVIEW
    assert gateway.calls_to("refund") == []
    assert ledger.get_balance(seed.patient.id) == Decimal("100.00")


def test_refund_rounding_unit_is_configurable(paid, session, gateway):
    _, payment = paid()
    engine = SettlementEngine(session, gateway, refund_unit=Decimal("0.01"))

    payment = engine.process_refund(payment.id, "Goodwill", amount=Decimal("0.05"))

    # the 0.005 wallet share rounds up to a full cent
    assert (payment.wallet_refund_amount, payment.gateway_refund_amount) == (Decimal("0.01"), Decimal("0.04"))


# =========================
# COMPENSATION
# =========================

def test_compensation_never_credits_twice(book, settlement, ledger, seed):
    ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
    appt = book()
    payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))

    settlement.compensate(payment, "first")
    settlement.compensate(payment, "second")

    assert ledger.get_balance(seed.patient.id) == Decimal("500.00")
    credits = ledger.list_transactions(seed.patient.id, type=TransactionType.CREDIT)
    assert credits.total == 2  # top-up and one restore
