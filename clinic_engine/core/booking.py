from datetime import date, time
from typing import List, Tuple

from sqlalchemy.orm import Session

from clinic_engine.models.schema import Session as SessionModel, BLOCKING_STATUSES

class BookingConflictChecker:
    """Decides whether a therapist's exact date/time slot is already taken.

    Only scheduled and completed sessions occupy a slot. In-progress,
    cancelled and no-show sessions do not block a new booking.
    """

    def __init__(self, db: Session):
        self.db = db

    def has_conflict(self, therapist_id: int, session_date: date, session_time: time) -> bool:
        existing = (
            self.db.query(SessionModel.id)
            .filter(
                SessionModel.therapist_id == therapist_id,
                SessionModel.scheduled_date == session_date,
                SessionModel.scheduled_time == session_time,
                SessionModel.status.in_(BLOCKING_STATUSES)
            )
            .first()
        )
        return existing is not None

    def partition_dates(self, therapist_id: int, dates: List[date],
                        session_time: time) -> Tuple[List[date], List[date]]:
        """Split requested dates into (creatable, skipped), keeping request order and dropping repeats"""
        creatable, skipped = [], []
        seen = set()
        for session_date in dates:
            if session_date in seen:
                continue
            seen.add(session_date)
            if self.has_conflict(therapist_id, session_date, session_time):
                skipped.append(session_date)
            else:
                creatable.append(session_date)
        return creatable, skipped
