from datetime import date, datetime, time, timedelta
from decimal import Decimal

from medibook.core.security import create_access_token
from medibook.models.appointment import TimeSlot
from medibook.models.user import User

# far enough ahead to count as "upcoming"
VISIT_DAY = date.today() + timedelta(days=7)

FEE = Decimal("1000.00")


def slot(hour: int, minute: int = 0, minutes: int = 30, day: date = VISIT_DAY) -> TimeSlot:
    start = datetime.combine(day, time(hour, minute))
    return TimeSlot(start=start, end=start + timedelta(minutes=minutes))


def at(hour: int, minute: int = 0, day: date = VISIT_DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}
