import logging
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from medibook.models.notification import Notification

logger = logging.getLogger(__name__)

TITLES = {
    "appointment_booked": "Appointment booked",
    "appointment_confirmed": "Appointment confirmed",
    "appointment_cancelled": "Appointment cancelled",
    "appointment_rescheduled": "Appointment rescheduled",
    "payment_completed": "Payment received",
    "payment_failed": "Payment failed",
    "payment_refunded": "Payment refunded",
}


class Notifier:
    """Fire-and-forget notifications.

    Called after the triggering change has been committed. A failure here
    is logged and only its own write is rolled back.
    """

    def __init__(self, session: Session):
        self.session = session

    def notify(self, user_id: int, kind: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Notification]:
        try:
            notification = Notification(
                user_id=user_id,
                kind=kind,
                title=TITLES.get(kind, kind.replace("_", " ").capitalize()),
                payload=payload or {},
            )
            self.session.add(notification)
            self.session.commit()
            self.session.refresh(notification)
            return notification
        except Exception:
            self.session.rollback()
            logger.exception(f"Notification '{kind}' for user {user_id} could not be stored")
            return None

    def list_for_user(self, user_id: int, limit: int = 50) -> List[Notification]:
        return list(
            self.session.exec(
                select(Notification)
                .where(Notification.user_id == user_id)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
            ).all()
        )
