from datetime import date, datetime, time
from decimal import Decimal

from clinic_engine.core.config import Settings
from clinic_engine.core.scheduling_engine import SchedulingEngine
from clinic_engine.models.schema import (
    AuditEntry, CreditType, PaymentMethod, Session as SessionModel, StaffRole
)

from conftest import NOW, actor_for

class ExplodingAuditSink:
    def record(self, *args, **kwargs):
        raise RuntimeError("audit store offline")

class TestBulkCreation:
    def test_skips_booked_dates(self, engine, seed, book):
        book(session_date=date(2025, 3, 12))
        result = engine.create_multiple_sessions(
            actor_for(seed["secretary"]),
            clinic_id=seed["north"].id,
            therapist_id=seed["licensed"].id,
            dates=[date(2025, 3, 11), date(2025, 3, 12), date(2025, 3, 13)],
            scheduled_time=time(9, 0),
            client_id=seed["clients"]["client"].id
        )
        assert result.success, result.error
        assert result.data["count"] == 2
        assert result.data["skipped_dates"] == ["2025-03-12"]
        assert result.warnings

    def test_fails_when_every_date_is_taken(self, engine, seed, book):
        book(session_date=date(2025, 3, 11))
        result = engine.create_multiple_sessions(
            actor_for(seed["secretary"]),
            clinic_id=seed["north"].id,
            therapist_id=seed["licensed"].id,
            dates=[date(2025, 3, 11)],
            scheduled_time=time(9, 0),
            client_id=seed["clients"]["client"].id
        )
        assert result.kind == "ConflictExists"
        assert "all selected slots are already booked" in result.error

    def test_requires_dates(self, engine, seed):
        result = engine.create_multiple_sessions(
            actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            dates=[], scheduled_time=time(9, 0), client_name="Child"
        )
        assert result.kind == "ValidationFailed"

def test_create_session_with_advance_credit(engine, seed, db):
    actor = actor_for(seed["secretary"])
    advance = engine.record_payment(
        actor, clinic_id=seed["north"].id, client_id=seed["clients"]["client"].id, amount=Decimal("2800"),
        method=PaymentMethod.CASH, credit_type=CreditType.ADVANCE, sessions_paid=4
    )

    result = engine.create_session(
        actor, clinic_id=seed["north"].id, therapist_id=seed["licensed"].id, scheduled_date=NOW.date(),
        scheduled_time=time(9, 0), client_id=seed["clients"]["client"].id,
        advance_payment_id=advance.data["payment"]["id"]
    )

    assert result.success, result.error
    assert result.data["payment_link"]["amount"] == "700.00"

def test_failed_credit_link_rolls_back_session(engine, seed, db):
    actor = actor_for(seed["secretary"])
    result = engine.create_session(
        actor, clinic_id=seed["north"].id, therapist_id=seed["licensed"].id, scheduled_date=NOW.date(),
        scheduled_time=time(9, 0), client_id=seed["clients"]["client"].id, advance_payment_id=12345
    )
    assert result.kind == "NotFound"
    assert db.query(SessionModel).count() == 0

def test_unexpected_error_is_reported_and_rolled_back(db, seed, clock):
    engine = SchedulingEngine(db, clock=clock, audit_sink=ExplodingAuditSink(), settings=Settings())
    result = engine.create_session(
        actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
        scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child"
    )
    assert not result.success
    assert result.kind == "InternalError"
    assert db.query(SessionModel).count() == 0

def test_database_audit_sink_commits_with_use_case(db, seed, clock):
    engine = SchedulingEngine(db, clock=clock, settings=Settings())
    result = engine.create_session(
        actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
        scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child"
    )
    assert result.success
    entry = db.query(AuditEntry).one()
    assert entry.action == "session.created"
    assert entry.entity_id == str(result.data["session"]["id"])
    assert entry.after["status"] == "scheduled"

def test_transitions_emit_before_and_after(engine, seed, book, audit_sink):
    session = book()
    engine.start_session(actor_for(seed["licensed"]), session["id"])
    entry = audit_sink.entries[-1]
    assert entry["action"] == "session.started"
    assert entry["before"]["status"] == "scheduled"
    assert entry["after"]["status"] == "in_progress"

def test_therapist_day_schedule_is_own_sessions_only(engine, seed, book):
    book(session_time=time(9, 0), therapist=seed["licensed"])
    book(session_time=time(9, 0), therapist=seed["speech"], client=seed["clients"]["speech_client"])

    own = engine.day_schedule(actor_for(seed["speech"]), NOW.date(), therapist_id=seed["licensed"].id)
    desk = engine.day_schedule(actor_for(seed["secretary"]), NOW.date())

    assert [s["therapist_id"] for s in own.data["sessions"]] == [seed["speech"].id]
    assert len(desk.data["sessions"]) == 2
    assert desk.data["therapist_loads"] == {str(seed["licensed"].id): 1, str(seed["speech"].id): 1}

def test_pending_confirmations(engine, seed, book):
    started, _ = book(session_time=time(9, 0)), book(session_time=time(11, 0))
    engine.start_session(actor_for(seed["licensed"]), started["id"])

    pending = engine.pending_confirmations(actor_for(seed["secretary"]))
    assert [s["id"] for s in pending.data["sessions"]] == [started["id"]]

    engine.confirm_session(actor_for(seed["secretary"]), started["id"])
    assert engine.pending_confirmations(actor_for(seed["secretary"])).data["sessions"] == []

def test_rate_administration(engine, seed, clock):
    owner = actor_for(seed["owner"])
    denied = engine.set_session_rate(actor_for(seed["secretary"]), seed["north"].id,
                                     StaffRole.SPEECH_THERAPIST, Decimal("550"))
    assert denied.kind == "Unauthorized"

    created = engine.set_session_rate(owner, seed["north"].id, StaffRole.SPEECH_THERAPIST, Decimal("550"),
                                      effective_from=datetime(2025, 3, 1))
    assert created.success, created.error

    current = engine.get_session_rate(owner, seed["north"].id, StaffRole.SPEECH_THERAPIST)
    assert Decimal(current.data["rate"]) == Decimal("550")
