from datetime import date, time

import pytest

from clinic_engine.core.booking import BookingConflictChecker
from clinic_engine.core.errors import ConflictExists
from clinic_engine.core.session_machine import SessionStateMachine
from clinic_engine.models.schema import Session as SessionModel, SessionStatus

from conftest import NOW, actor_for

def test_scheduled_session_blocks_slot(db, seed, book):
    book(session_time=time(9, 0))
    checker = BookingConflictChecker(db)
    assert checker.has_conflict(seed["licensed"].id, NOW.date(), time(9, 0))
    assert not checker.has_conflict(seed["licensed"].id, NOW.date(), time(10, 0))
    assert not checker.has_conflict(seed["speech"].id, NOW.date(), time(9, 0))

def test_duplicate_booking_is_rejected(engine, seed, book):
    book(session_time=time(9, 0))
    result = engine.create_session(
        actor_for(seed["secretary"]),
        clinic_id=seed["north"].id,
        therapist_id=seed["licensed"].id,
        scheduled_date=NOW.date(),
        scheduled_time=time(9, 0),
        client_name="Walk-in Child"
    )
    assert not result.success
    assert result.kind == "ConflictExists"

@pytest.mark.parametrize("status", [SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED, SessionStatus.NO_SHOW])
def test_non_blocking_statuses_free_the_slot(db, seed, book, status):
    session = book(session_time=time(9, 0))
    db.query(SessionModel).filter(SessionModel.id == session["id"]).update({SessionModel.status: status})
    db.commit()

    assert not BookingConflictChecker(db).has_conflict(seed["licensed"].id, NOW.date(), time(9, 0))
    book(session_time=time(9, 0))

def test_completed_session_blocks_slot(db, seed, book):
    session = book(session_time=time(9, 0))
    db.query(SessionModel).filter(SessionModel.id == session["id"]).update(
        {SessionModel.status: SessionStatus.COMPLETED}
    )
    db.commit()
    assert BookingConflictChecker(db).has_conflict(seed["licensed"].id, NOW.date(), time(9, 0))

def test_partition_dates_keeps_order_and_drops_repeats(db, seed, book):
    book(session_date=date(2025, 3, 12), session_time=time(9, 0))
    checker = BookingConflictChecker(db)
    dates = [date(2025, 3, 14), date(2025, 3, 12), date(2025, 3, 11), date(2025, 3, 14)]

    creatable, skipped = checker.partition_dates(seed["licensed"].id, dates, time(9, 0))

    assert creatable == [date(2025, 3, 14), date(2025, 3, 11)]
    assert skipped == [date(2025, 3, 12)]

def test_unique_index_catches_race_past_the_check(db, seed, clock, book, monkeypatch):
    book(session_time=time(9, 0))
    machine = SessionStateMachine(db, clock)
    monkeypatch.setattr(machine.conflicts, "has_conflict", lambda *args: False)

    with pytest.raises(ConflictExists):
        machine.create_session(seed["north"].id, seed["licensed"].id, NOW.date(), time(9, 0),
                               client_name="Racing Child")
    db.rollback()
