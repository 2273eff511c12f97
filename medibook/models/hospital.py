from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field


class HospitalBase(SQLModel):
    name: str = Field(index=True)
    address: Optional[str] = None
    contact: Optional[str] = None


class Hospital(HospitalBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class HospitalCreate(HospitalBase):
    pass


class DepartmentBase(SQLModel):
    name: str
    description: Optional[str] = None


class Department(DepartmentBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    hospital_id: int = Field(foreign_key="hospital.id", index=True)


class DepartmentCreate(DepartmentBase):
    pass
