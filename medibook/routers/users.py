from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from medibook.core.errors import Conflict, ValidationError
from medibook.core.permissions import Action
from medibook.core.security import get_current_user, get_password_hash, require
from medibook.database import get_session
from medibook.models.user import Role, User, UserCreate, UserRead
from medibook.services.directory import Directory

router = APIRouter(prefix="/users", tags=["users"])


def _create(session: Session, user: UserCreate) -> User:
    existing_user = session.exec(
        select(User).where(User.email == user.email)
    ).first()

    if existing_user:
        raise Conflict("Email already registered")

    if user.hospital_id is not None:
        Directory(session).get_hospital(user.hospital_id)

    db_user = User(
        name=user.name,
        email=user.email,
        password_hash=get_password_hash(user.password),
        role=user.role,
        phone=user.phone,
        hospital_id=user.hospital_id,
    )

    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    return db_user


# =========================
# SELF REGISTRATION (PATIENTS)
# =========================
@router.post("/", response_model=UserRead, status_code=201)
def create_user(user: UserCreate, session: Session = Depends(get_session)):
    if user.role != Role.PATIENT:
        raise ValidationError("Only patients can self-register")
    return _create(session, user)


# =========================
# STAFF ACCOUNTS
# =========================
@router.post("/staff", response_model=UserRead, status_code=201)
def create_staff(
    user: UserCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require(Action.MANAGE_DIRECTORY)),
):
    if user.role == Role.SUPER_ADMIN and current_user.role != Role.SUPER_ADMIN:
        raise ValidationError("Only a super admin can create another super admin")
    return _create(session, user)


@router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_user)):
    return current_user
