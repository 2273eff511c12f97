"""
Role-based access policy.

Every protected route names one ``Action``; ``POLICY`` is the only place
that decides which roles may perform it.
"""
from enum import Enum
from typing import Dict, FrozenSet

from medibook.models.user import Role


class Action(str, Enum):
    BOOK_APPOINTMENT = "book_appointment"
    VIEW_APPOINTMENTS = "view_appointments"
    CONFIRM_APPOINTMENT = "confirm_appointment"
    CHECK_IN = "check_in"
    RECORD_VITALS = "record_vitals"
    COMPLETE_APPOINTMENT = "complete_appointment"
    CANCEL_APPOINTMENT = "cancel_appointment"
    MARK_NO_SHOW = "mark_no_show"
    RESCHEDULE_APPOINTMENT = "reschedule_appointment"
    PROCESS_PAYMENT = "process_payment"
    VIEW_PAYMENTS = "view_payments"
    REFUND_PAYMENT = "refund_payment"
    RECONCILE_PAYMENTS = "reconcile_payments"
    VIEW_WALLET = "view_wallet"
    ADJUST_WALLET = "adjust_wallet"
    MANAGE_DIRECTORY = "manage_directory"
    VIEW_DIRECTORY = "view_directory"


ADMINS = frozenset({Role.SUPER_ADMIN, Role.OWNER})
FRONT_DESK = ADMINS | {Role.RECEPTIONIST}
CLINICAL = frozenset({Role.DOCTOR, Role.NURSE})
EVERYONE = frozenset(Role)

POLICY: Dict[Action, FrozenSet[Role]] = {
    Action.BOOK_APPOINTMENT: FRONT_DESK | {Role.PATIENT},
    Action.VIEW_APPOINTMENTS: EVERYONE,
    Action.CONFIRM_APPOINTMENT: FRONT_DESK,
    Action.CHECK_IN: FRONT_DESK | {Role.NURSE},
    Action.RECORD_VITALS: ADMINS | CLINICAL,
    Action.COMPLETE_APPOINTMENT: ADMINS | {Role.DOCTOR},
    Action.CANCEL_APPOINTMENT: FRONT_DESK | {Role.PATIENT},
    Action.MARK_NO_SHOW: FRONT_DESK,
    Action.RESCHEDULE_APPOINTMENT: FRONT_DESK | {Role.PATIENT},
    Action.PROCESS_PAYMENT: FRONT_DESK | {Role.PATIENT},
    Action.VIEW_PAYMENTS: FRONT_DESK | {Role.PATIENT},
    Action.REFUND_PAYMENT: FRONT_DESK,
    Action.RECONCILE_PAYMENTS: ADMINS,
    Action.VIEW_WALLET: FRONT_DESK | {Role.PATIENT},
    Action.ADJUST_WALLET: ADMINS,
    Action.MANAGE_DIRECTORY: ADMINS,
    Action.VIEW_DIRECTORY: EVERYONE,
}


def is_allowed(role: Role, action: Action) -> bool:
    return role in POLICY.get(action, frozenset())
