from typing import Optional
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    kind: str = Field(index=True)  # appointment_confirmed | appointment_cancelled | payment_refunded | ...
    title: str
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
