from sqlmodel import Session, select

from medibook.core.errors import NotFound, ValidationError
from medibook.models.hospital import Department, Hospital
from medibook.models.user import Role, User


class Directory:
    """Read-only lookups of hospitals, departments, practitioners and patients."""

    def __init__(self, session: Session):
        self.session = session

    def get_hospital(self, hospital_id: int) -> Hospital:
        hospital = self.session.get(Hospital, hospital_id)
        if not hospital or not hospital.active:
            raise NotFound(f"Hospital {hospital_id} not found")
        return hospital

    def get_department(self, department_id: int) -> Department:
        department = self.session.get(Department, department_id)
        if not department:
            raise NotFound(f"Department {department_id} not found")
        return department

    def get_practitioner(self, doctor_id: int) -> User:
        return self._get_user(doctor_id, Role.DOCTOR, "Practitioner")

    def get_patient(self, patient_id: int) -> User:
        return self._get_user(patient_id, Role.PATIENT, "Patient")

    def lock_practitioner(self, doctor_id: int) -> User:
        """Row-lock the practitioner so concurrent bookings for them queue up."""
        return self.session.exec(
            select(User)
            .where(User.id == doctor_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one()

    def _get_user(self, user_id: int, role: Role, label: str) -> User:
        user = self.session.get(User, user_id)
        if not user or not user.is_active:
            raise NotFound(f"{label} {user_id} not found")
        if user.role != role:
            raise ValidationError(f"User {user_id} is not a {role.value}")
        return user
