"""
Shared pytest fixtures.

Every test gets a fresh in-memory SQLite database with one hospital, one
department and a user per role, plus a scriptable fake payment gateway.
"""

import os
from decimal import Decimal
from types import SimpleNamespace
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from medibook.database import get_session  # noqa: E402
from medibook.models import appointment, hospital, notification, payment, wallet  # noqa: E402,F401
from medibook.models.appointment import AppointmentCreate  # noqa: E402
from medibook.models.hospital import Department, Hospital  # noqa: E402
from medibook.models.user import Role, User  # noqa: E402
from medibook.services.appointments import AppointmentService  # noqa: E402
from medibook.services.gateway import FakeGatewayClient, get_gateway  # noqa: E402
from medibook.services.settlement import SettlementEngine  # noqa: E402
from medibook.services.wallet_ledger import WalletLedger  # noqa: E402
from tests.helpers import FEE, VISIT_DAY, auth_headers, slot  # noqa: E402


# ============================================================================
# DATABASE
# ============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine) -> Iterator[Session]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def seed(session):
    """One hospital, one department and a user for each role we test with."""
    main = Hospital(name="City Hospital")
    other = Hospital(name="Harbour Clinic")
    session.add(main)
    session.add(other)
    session.commit()
    session.refresh(main)
    session.refresh(other)

    cardiology = Department(hospital_id=main.id, name="Cardiology")
    session.add(cardiology)

    def user(name, role, hospital_id=None):
        u = User(
            name=name,
            email=f"{name}@test.local",
            role=role,
            password_hash="not-used",
            hospital_id=hospital_id,
        )
        session.add(u)
        return u

    users = {
        "owner": user("owner", Role.OWNER, main.id),
        "receptionist": user("receptionist", Role.RECEPTIONIST, main.id),
        "doctor": user("doctor", Role.DOCTOR, main.id),
        "other_doctor": user("other_doctor", Role.DOCTOR, other.id),
        "nurse": user("nurse", Role.NURSE, main.id),
        "staff": user("staff", Role.STAFF, main.id),
        "patient": user("patient", Role.PATIENT),
        "other_patient": user("other_patient", Role.PATIENT),
    }
    session.commit()
    for u in users.values():
        session.refresh(u)
    session.refresh(cardiology)

    return SimpleNamespace(hospital=main, other_hospital=other, department=cardiology, **users)


# ============================================================================
# SERVICES
# ============================================================================


@pytest.fixture
def gateway() -> FakeGatewayClient:
    return FakeGatewayClient()


@pytest.fixture
def ledger(session) -> WalletLedger:
    return WalletLedger(session)


@pytest.fixture
def settlement(session, gateway, ledger) -> SettlementEngine:
    return SettlementEngine(session, gateway, ledger=ledger, refund_unit=Decimal("1"))


@pytest.fixture
def appointments(session, settlement) -> AppointmentService:
    return AppointmentService(session, settlement)


@pytest.fixture
def book(appointments, seed):
    """Book a visit with the seeded doctor; keyword arguments override the defaults."""

    def _book(time_slot=None, patient=None, **overrides):
        patient = patient or seed.patient
        data = AppointmentCreate(
            doctor_id=overrides.pop("doctor_id", seed.doctor.id),
            hospital_id=overrides.pop("hospital_id", seed.hospital.id),
            date=overrides.pop("date", VISIT_DAY),
            time_slot=time_slot or slot(10),
            payment_amount=overrides.pop("payment_amount", FEE),
            **overrides,
        )
        return appointments.book(data, patient.id, booked_by=patient.id)

    return _book


@pytest.fixture
def paid(book, settlement, appointments, ledger, seed):
    """A booked appointment paid 300 from the wallet and 700 through the gateway."""

    def _paid(time_slot=None):
        ledger.credit(seed.patient.id, Decimal("500"), "Top-up")
        appt = book(time_slot=time_slot)
        payment = settlement.process_payment(appt.id, seed.patient.id, FEE, Decimal("300"))
        payment = settlement.verify_payment(payment.transaction_id)
        appointments.apply_payment(appt.id, payment)
        return appointments.get(appt.id), settlement.get(payment.id)

    return _paid


# ============================================================================
# API
# ============================================================================


@pytest.fixture
def client(engine, gateway) -> Iterator[TestClient]:
    from medibook.main import app

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers(seed):
    """headers("patient") -> bearer auth for that seeded user."""
    return lambda name: auth_headers(getattr(seed, name))
