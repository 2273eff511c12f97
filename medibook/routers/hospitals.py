from typing import List

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from medibook.core.permissions import Action
from medibook.core.security import require
from medibook.database import get_session
from medibook.models.hospital import Department, DepartmentCreate, Hospital, HospitalCreate
from medibook.models.user import User
from medibook.services.directory import Directory

router = APIRouter(prefix="/hospitals", tags=["hospitals"])


# =========================
# HOSPITALS
# =========================
@router.post("/", response_model=Hospital, status_code=201)
def create_hospital(
    data: HospitalCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.MANAGE_DIRECTORY)),
):
    hospital = Hospital.model_validate(data)
    session.add(hospital)
    session.commit()
    session.refresh(hospital)
    return hospital


@router.get("/", response_model=List[Hospital])
def list_hospitals(
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.VIEW_DIRECTORY)),
):
    return session.exec(
        select(Hospital).where(Hospital.active == True).order_by(Hospital.name)  # noqa: E712
    ).all()


@router.get("/{hospital_id}", response_model=Hospital)
def get_hospital(
    hospital_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.VIEW_DIRECTORY)),
):
    return Directory(session).get_hospital(hospital_id)


# =========================
# DEPARTMENTS
# =========================
@router.post("/{hospital_id}/departments", response_model=Department, status_code=201)
def create_department(
    hospital_id: int,
    data: DepartmentCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.MANAGE_DIRECTORY)),
):
    Directory(session).get_hospital(hospital_id)

    department = Department(hospital_id=hospital_id, name=data.name, description=data.description)
    session.add(department)
    session.commit()
    session.refresh(department)
    return department


@router.get("/{hospital_id}/departments", response_model=List[Department])
def list_departments(
    hospital_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.VIEW_DIRECTORY)),
):
    Directory(session).get_hospital(hospital_id)
    return session.exec(
        select(Department).where(Department.hospital_id == hospital_id).order_by(Department.name)
    ).all()
