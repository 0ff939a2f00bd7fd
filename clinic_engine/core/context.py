from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Protocol, Tuple

from clinic_engine.models.schema import StaffRole

@dataclass(frozen=True)
class Actor:
    """An already-authenticated staff member acting on the engine."""
    id: int
    role: StaffRole
    home_clinic_id: Optional[int] = None

class Clock(Protocol):
    def now(self) -> datetime: ...

class SystemClock:
    def now(self) -> datetime:
        return datetime.now()

def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)

def window_bounds(window: str, day: date) -> Tuple[datetime, datetime]:
    """Half-open [start, end) range for a day, a Monday-start week or a month."""
    if window == "day":
        return day_bounds(day)
    if window == "week":
        week_start = day - timedelta(days=day.weekday())
        return datetime.combine(week_start, time.min), datetime.combine(week_start + timedelta(days=7), time.min)
    if window == "month":
        month_start = day.replace(day=1)
        next_month = (month_start + timedelta(days=32)).replace(day=1)
        return datetime.combine(month_start, time.min), datetime.combine(next_month, time.min)
    raise ValueError(f"Unknown date window: {window}")
