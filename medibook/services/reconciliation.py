import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlmodel import Session, select

from medibook.core.config import get_settings
from medibook.models.payment import IN_FLIGHT_SAGA_STATES, Payment
from medibook.services.appointments import AppointmentService
from medibook.services.gateway import GatewayClient
from medibook.services.settlement import SettlementEngine

logger = logging.getLogger(__name__)

SETTLED_OUTCOMES = ("completed", "compensated", "failed")


class Reconciler:
    """Finds payments stuck mid-saga and resumes each one.

    A payment that reaches a final state is mirrored onto its appointment.
    """

    def __init__(self, session: Session, gateway: GatewayClient):
        self.session = session
        self.engine = SettlementEngine(session, gateway)
        self.appointments = AppointmentService(session, self.engine)

    def stuck_payments(self, cutoff: datetime):
        return self.session.exec(
            select(Payment.id).where(
                Payment.saga_state.in_(IN_FLIGHT_SAGA_STATES),
                Payment.updated_at < cutoff,
            ).order_by(Payment.updated_at)
        ).all()

    def sweep(self, older_than: Optional[timedelta] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        if older_than is None:
            older_than = timedelta(minutes=get_settings().RECONCILE_AFTER_MINUTES)
        cutoff = (now or datetime.utcnow()) - older_than

        outcomes: Counter = Counter()
        for payment_id in self.stuck_payments(cutoff):
            try:
                outcome = self.engine.resume(payment_id)
                if outcome in SETTLED_OUTCOMES:
                    payment = self.engine.get(payment_id)
                    self.appointments.apply_payment(payment.appointment_id, payment)
            except Exception:
                self.session.rollback()
                logger.exception(f"Could not reconcile payment {payment_id}")
                outcome = "error"
            outcomes[outcome] += 1
            logger.info(f"Reconciled payment {payment_id}: {outcome}")

        summary = dict(outcomes)
        summary["total"] = sum(outcomes.values())
        return summary
