from typing import List

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from medibook.core.security import get_current_user
from medibook.database import get_session
from medibook.models.notification import Notification
from medibook.models.user import User
from medibook.services.notifications import Notifier

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/me", response_model=List[Notification])
def my_notifications(
    limit: int = Query(50, ge=1, le=200),
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    return Notifier(session).list_for_user(current_user.id, limit)
