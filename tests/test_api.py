import json
import logging
from decimal import Decimal

import pytest

from medibook.core.config import get_settings
from medibook.services.gateway import sign_payload

from tests.helpers import VISIT_DAY, slot


def booking(seed, hour=10, minute=0, **extra):
    time_slot = slot(hour, minute)
    body = {
        "doctor_id": seed.doctor.id,
        "hospital_id": seed.hospital.id,
        "date": VISIT_DAY.isoformat(),
        "time_slot": {"start": time_slot.start.isoformat(), "end": time_slot.end.isoformat()},
        "payment_amount": "1000.00",
    }
    body.update(extra)
    return body


def webhook(client, payload, secret=None):
    body = json.dumps(payload).encode()
    signature = sign_payload(body, secret or get_settings().GATEWAY_WEBHOOK_SECRET)
    return client.post(
        "/payments/verify",
        content=body,
        headers={"X-Gateway-Signature": signature, "Content-Type": "application/json"},
    )


@pytest.fixture
def booked(client, seed, headers):
    resp = client.post("/appointments/", json=booking(seed), headers=headers("patient"))
    assert resp.status_code == 201, resp.text
    return resp.json()


# =========================
# BASICS & AUTH
# =========================

def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_register_login_and_me(client, seed):
    resp = client.post(
        "/users/",
        json={"name": "Ann", "email": "ann@test.local", "role": "patient", "password": "s3cret!"},
    )
    assert resp.status_code == 201
    assert "password_hash" not in resp.json()

    bad = client.post("/auth/login", data={"username": "ann@test.local", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json()["errorKind"] == "Unauthorized"

    token = client.post("/auth/login", data={"username": "ann@test.local", "password": "s3cret!"}).json()
    me = client.get("/users/me", headers={"Authorization": f"Bearer {token['access_token']}"})
    assert me.json()["email"] == "ann@test.local"


def test_self_registration_is_for_patients_only(client, seed):
    resp = client.post(
        "/users/",
        json={"name": "Eve", "email": "eve@test.local", "role": "super_admin", "password": "x"},
    )
    assert resp.status_code == 400
    assert resp.json()["errorKind"] == "ValidationError"


def test_duplicate_email_conflicts(client, seed):
    resp = client.post(
        "/users/",
        json={"name": "Pat", "email": seed.patient.email, "role": "patient", "password": "x"},
    )
    assert resp.status_code == 409


def test_owner_creates_staff(client, seed, headers):
    body = {"name": "Dr. New", "email": "new@test.local", "role": "doctor", "password": "x", "hospital_id": seed.hospital.id}

    assert client.post("/users/staff", json=body, headers=headers("receptionist")).status_code == 403
    resp = client.post("/users/staff", json=body, headers=headers("owner"))
    assert resp.status_code == 201
    assert resp.json()["role"] == "doctor"


def test_requests_without_token_are_rejected(client, seed):
    resp = client.get("/appointments/")
    assert resp.status_code == 401
    assert resp.json()["statusCode"] == 401
    assert resp.json()["errorKind"] == "Unauthorized"


# =========================
# DIRECTORY
# =========================

def test_hospitals_and_departments(client, seed, headers):
    resp = client.post("/hospitals/", json={"name": "North Wing"}, headers=headers("owner"))
    assert resp.status_code == 201
    hospital_id = resp.json()["id"]

    resp = client.post(f"/hospitals/{hospital_id}/departments", json={"name": "ENT"}, headers=headers("owner"))
    assert resp.status_code == 201

    names = [d["name"] for d in client.get(f"/hospitals/{hospital_id}/departments", headers=headers("patient")).json()]
    assert names == ["ENT"]
    assert client.get("/hospitals/999", headers=headers("patient")).json()["errorKind"] == "NotFound"


def test_patients_cannot_manage_the_directory(client, seed, headers):
    resp = client.post("/hospitals/", json={"name": "Nope"}, headers=headers("patient"))
    assert resp.status_code == 403
    assert resp.json()["errorKind"] == "Forbidden"
    assert "patient" in resp.json()["message"]


# =========================
# APPOINTMENTS
# =========================

def test_patient_books_for_themselves(client, seed, booked):
    assert booked["status"] == "pending"
    assert booked["patient_id"] == seed.patient.id
    assert booked["appointment_id"].startswith("APT")


def test_front_desk_must_name_the_patient(client, seed, headers):
    resp = client.post("/appointments/", json=booking(seed), headers=headers("receptionist"))
    assert resp.status_code == 400

    resp = client.post("/appointments/", json=booking(seed, patient_id=seed.patient.id), headers=headers("receptionist"))
    assert resp.status_code == 201


def test_double_booking_is_a_conflict(client, seed, headers, booked):
    resp = client.post("/appointments/", json=booking(seed, minute=15), headers=headers("other_patient"))

    assert resp.status_code == 409
    assert resp.json()["errorKind"] == "Conflict"


def test_bad_time_slot_is_a_validation_error(client, seed, headers):
    body = booking(seed)
    body["time_slot"]["end"] = body["time_slot"]["start"]

    resp = client.post("/appointments/", json=body, headers=headers("patient"))

    assert resp.status_code == 422
    assert resp.json()["errorKind"] == "ValidationError"
    assert resp.json()["details"]


def test_patients_see_only_their_own(client, seed, headers, booked):
    assert client.get(f"/appointments/{booked['id']}", headers=headers("other_patient")).status_code == 403
    assert client.get("/appointments/", headers=headers("other_patient")).json() == []
    assert client.get(f"/appointments/{booked['id']}", headers=headers("doctor")).status_code == 200


def test_lookup_by_reference_and_upcoming(client, seed, headers, booked):
    resp = client.get(f"/appointments/by-reference/{booked['appointment_id']}", headers=headers("patient"))
    assert resp.json()["id"] == booked["id"]

    upcoming = client.get("/appointments/upcoming", headers=headers("patient")).json()
    assert [a["id"] for a in upcoming] == [booked["id"]]


def test_available_slots(client, seed, headers, booked):
    resp = client.get(
        "/appointments/available",
        params={"practitioner_id": seed.doctor.id, "day": VISIT_DAY.isoformat(), "duration_minutes": 30},
        headers=headers("patient"),
    )

    starts = [s["start"][11:16] for s in resp.json()["slots"]]
    assert "09:30" in starts
    assert "10:00" not in starts
    assert "10:15" not in starts
    assert "10:30" in starts


def test_invalid_transition_reports_state(client, seed, headers, booked):
    resp = client.patch(f"/appointments/{booked['id']}/checkin", headers=headers("receptionist"))

    assert resp.status_code == 409
    assert resp.json()["errorKind"] == "InvalidTransition"
    assert resp.json()["currentState"] == "pending"
    assert resp.json()["operation"] == "check_in"


def test_role_is_checked_before_state(client, seed, headers, booked):
    resp = client.patch(f"/appointments/{booked['id']}/confirm", headers=headers("patient"))
    assert resp.status_code == 403


def test_reschedule_and_history(client, seed, headers, booked):
    new_slot = slot(15)
    resp = client.post(
        f"/appointments/{booked['id']}/reschedule",
        json={
            "date": VISIT_DAY.isoformat(),
            "time_slot": {"start": new_slot.start.isoformat(), "end": new_slot.end.isoformat()},
        },
        headers=headers("patient"),
    )
    assert resp.status_code == 200
    assert resp.json()["reschedule_count"] == 1

    history = client.get(f"/appointments/{booked['id']}/history", headers=headers("patient")).json()
    assert [h["status"] for h in history] == ["pending", "rescheduled", "pending"]


# =========================
# PAYMENTS & WALLET
# =========================

def test_paid_visit_end_to_end(client, seed, headers, booked, gateway):
    patient = seed.patient.id

    resp = client.post(
        f"/wallets/{patient}/credit",
        json={"amount": "500", "description": "Top-up"},
        headers=headers("owner"),
    )
    assert Decimal(resp.json()["balance"]) == Decimal("500")
    assert Decimal(resp.json()["last_transaction"]["balance_after"]) == Decimal("500")
    assert resp.json()["last_transaction"]["type"] == "credit"

    resp = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000", "wallet_amount_to_use": "300"},
        headers=headers("patient"),
    )
    assert resp.status_code == 201, resp.text
    payment = resp.json()
    assert payment["status"] == "processing"
    assert payment["method"] == "mixed"

    # the appointment cannot be confirmed until the gateway reports back
    assert client.patch(f"/appointments/{booked['id']}/confirm", headers=headers("receptionist")).status_code == 409

    resp = webhook(client, {"transaction_id": payment["transaction_id"], "status": "completed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    appt = client.patch(f"/appointments/{booked['id']}/confirm", headers=headers("receptionist")).json()
    assert appt["status"] == "confirmed"
    assert appt["payment_status"] == "paid"
    assert Decimal(appt["wallet_credit_used"]) == Decimal("300")

    client.patch(f"/appointments/{booked['id']}/checkin", json={"vitals": {"heart_rate": 70}}, headers=headers("nurse"))
    resp = client.patch(
        f"/appointments/{booked['id']}/cancel",
        json={"reason": "Family emergency"},
        headers=headers("patient"),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["payment_status"] == "refunded"

    refunded = client.get(f"/payments/{payment['id']}", headers=headers("patient")).json()
    assert Decimal(refunded["wallet_refund_amount"]) == Decimal("100")
    assert Decimal(refunded["gateway_refund_amount"]) == Decimal("900")
    assert refunded["gateway_refund_status"] == "succeeded"

    wallet = client.get(f"/wallets/{patient}", headers=headers("patient")).json()
    assert Decimal(wallet["balance"]) == Decimal("300")

    page = client.get(f"/wallets/{patient}/transactions", params={"type": "credit"}, headers=headers("patient")).json()
    assert page["total"] == 2

    integrity = client.get(f"/wallets/{patient}/integrity", headers=headers("owner")).json()
    assert integrity["consistent"] is True

    kinds = [n["kind"] for n in client.get("/notifications/me", headers=headers("patient")).json()]
    assert "payment_refunded" in kinds


def test_insufficient_balance_payload(client, seed, headers, booked):
    resp = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000", "wallet_amount_to_use": "300"},
        headers=headers("patient"),
    )

    assert resp.status_code == 400
    assert resp.json()["errorKind"] == "InsufficientBalance"
    assert Decimal(resp.json()["available"]) == Decimal("0")
    assert Decimal(resp.json()["requested"]) == Decimal("300")


def test_gateway_outage_is_a_bad_gateway(client, seed, headers, booked, gateway):
    gateway.fail_on.add("initiate")

    resp = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000"},
        headers=headers("patient"),
    )

    assert resp.status_code == 502
    assert resp.json()["errorKind"] == "GatewayFailure"


def test_webhook_requires_a_valid_signature(client, seed, booked):
    resp = webhook(client, {"transaction_id": "TXN-anything"}, secret="wrong")
    assert resp.status_code == 401


def test_webhook_status_is_checked_against_the_gateway(client, seed, headers, booked, gateway, caplog):
    payment = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000"},
        headers=headers("patient"),
    ).json()
    gateway.verify_status = "pending"

    with caplog.at_level(logging.WARNING, logger="medibook.routers.payments"):
        resp = webhook(client, {"transaction_id": payment["transaction_id"], "status": "completed"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "processing"
    assert "reported 'completed', verified status is 'processing'" in caplog.text


def test_webhook_for_unknown_payment(client, seed):
    resp = webhook(client, {"transaction_id": "TXN-missing"})
    assert resp.status_code == 404


def test_refund_through_the_api(client, seed, headers, booked):
    client.post(f"/wallets/{seed.patient.id}/credit", json={"amount": "1000", "description": "Top-up"}, headers=headers("owner"))
    payment = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000", "wallet_amount_to_use": "1000"},
        headers=headers("patient"),
    ).json()
    assert payment["status"] == "completed"

    assert client.post(f"/payments/{payment['id']}/refund", json={"reason": "x"}, headers=headers("patient")).status_code == 403

    resp = client.post(
        f"/payments/{payment['id']}/refund",
        json={"reason": "Goodwill", "amount": "200"},
        headers=headers("receptionist"),
    )
    assert resp.json()["status"] == "partially_refunded"
    assert resp.json()["gateway_refund_status"] == "manual_review"

    appt = client.get(f"/appointments/{booked['id']}", headers=headers("patient")).json()
    assert appt["payment_status"] == "partially_refunded"


def test_payment_queries_are_scoped(client, seed, headers, booked):
    payment = client.post(
        "/payments/process",
        json={"appointment_id": booked["id"], "total_amount": "1000"},
        headers=headers("patient"),
    ).json()

    by_txn = client.get(f"/payments/transaction/{payment['transaction_id']}", headers=headers("patient"))
    assert by_txn.json()["id"] == payment["id"]
    assert len(client.get(f"/payments/appointment/{booked['id']}", headers=headers("receptionist")).json()) == 1
    assert client.get(f"/payments/patient/{seed.patient.id}", headers=headers("other_patient")).status_code == 403


def test_wallet_adjustments_are_admin_only(client, seed, headers):
    body = {"amount": "10", "description": "Gift"}
    assert client.post(f"/wallets/{seed.patient.id}/credit", json=body, headers=headers("patient")).status_code == 403

    resp = client.post(f"/wallets/{seed.patient.id}/debit", json=body, headers=headers("owner"))
    assert resp.status_code == 400
    assert resp.json()["errorKind"] == "InsufficientBalance"


def test_reconcile_endpoint(client, seed, headers):
    assert client.post("/payments/reconcile", headers=headers("receptionist")).status_code == 403
    assert client.post("/payments/reconcile", headers=headers("owner")).json() == {"total": 0}
