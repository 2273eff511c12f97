import logging
from decimal import Decimal

from sqlmodel import Session, select

from medibook.core.config import get_settings
from medibook.core.logging_config import setup_logging
from medibook.core.security import get_password_hash
from medibook.database import create_db_and_tables, engine
from medibook.models.hospital import Department, Hospital
from medibook.models.user import Role, User
from medibook.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

HOSPITAL_NAME = "MediBook General Hospital"
DEMO_PASSWORD = "medibook123"
WALLET_FUNDS = Decimal("500.00")

USERS = [
    ("Olivia Owner", "owner@medibook.local", Role.OWNER),
    ("Rita Reception", "reception@medibook.local", Role.RECEPTIONIST),
    ("Dr. Daniel Doctor", "doctor@medibook.local", Role.DOCTOR),
    ("Nina Nurse", "nurse@medibook.local", Role.NURSE),
    ("Paul Patient", "patient@medibook.local", Role.PATIENT),
]


def main():
    setup_logging(get_settings().LOG_LEVEL)
    create_db_and_tables()

    with Session(engine) as session:
        # 1) hospital and department
        hospital = session.exec(select(Hospital).where(Hospital.name == HOSPITAL_NAME)).first()
        if not hospital:
            hospital = Hospital(name=HOSPITAL_NAME, address="1 Health Street", contact="+1 555 0100")
            session.add(hospital)
            session.commit()
            session.refresh(hospital)

        department = session.exec(
            select(Department).where(Department.hospital_id == hospital.id, Department.name == "General Medicine")
        ).first()
        if not department:
            session.add(Department(hospital_id=hospital.id, name="General Medicine"))

        # 2) staff and a demo patient (only if missing)
        for name, email, role in USERS:
            if session.exec(select(User).where(User.email == email)).first():
                continue
            session.add(
                User(
                    name=name,
                    email=email,
                    role=role,
                    password_hash=get_password_hash(DEMO_PASSWORD),
                    # patients are not attached to a hospital
                    hospital_id=None if role == Role.PATIENT else hospital.id,
                )
            )
        session.commit()

        # 3) a funded wallet for the patient
        patient = session.exec(select(User).where(User.email == "patient@medibook.local")).one()
        ledger = WalletLedger(session)
        if ledger.get_balance(patient.id) == 0:
            ledger.credit(patient.id, WALLET_FUNDS, "Demo top-up")

        logger.info(f"Seed done: hospital {hospital.id}, patient {patient.id} with {ledger.get_balance(patient.id)} in wallet")
        logger.info(f"All demo users share the password '{DEMO_PASSWORD}'")


if __name__ == "__main__":
    main()
