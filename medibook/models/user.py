from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    OWNER = "owner"
    RECEPTIONIST = "receptionist"
    DOCTOR = "doctor"
    NURSE = "nurse"
    STAFF = "staff"
    PATIENT = "patient"


class UserBase(SQLModel):
    name: str
    email: str = Field(index=True, unique=True)
    role: Role
    phone: Optional[str] = None
    hospital_id: Optional[int] = Field(default=None, foreign_key="hospital.id", index=True)


class User(UserBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    password_hash: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: int
