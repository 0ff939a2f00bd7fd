from datetime import time

import pytest

from clinic_engine.core.errors import InvalidStateTransition, Unauthorized, ValidationFailed
from clinic_engine.core.session_machine import SessionStateMachine
from clinic_engine.models.schema import Session as SessionModel, SessionStatus

from conftest import NOW, actor_for

@pytest.fixture
def machine(db, clock):
    return SessionStateMachine(db, clock)

class TestCreateValidation:
    def test_requires_exactly_one_client_reference(self, engine, seed):
        actor = actor_for(seed["secretary"])
        common = dict(clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
                      scheduled_date=NOW.date(), scheduled_time=time(9, 0))

        neither = engine.create_session(actor, **common)
        both = engine.create_session(actor, client_id=seed["clients"]["client"].id, client_name="Ada", **common)

        assert neither.kind == "ValidationFailed" and neither.field == "client_id"
        assert both.kind == "ValidationFailed"

    def test_free_text_client_name(self, engine, seed):
        result = engine.create_session(
            actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            scheduled_date=NOW.date(), scheduled_time=time(11, 0), client_name="  Walk-in Child "
        )
        assert result.success
        assert result.data["session"]["client_name"] == "Walk-in Child"
        assert result.data["session"]["client_id"] is None
        assert result.data["session"]["duration_minutes"] == 60

    @pytest.mark.parametrize("minutes", [10, 181])
    def test_duration_bounds(self, engine, seed, minutes):
        result = engine.create_session(
            actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child",
            duration_minutes=minutes
        )
        assert result.kind == "ValidationFailed"
        assert result.field == "duration_minutes"

    def test_therapist_must_hold_therapist_role(self, engine, seed):
        result = engine.create_session(
            actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["secretary"].id,
            scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child"
        )
        assert result.kind == "ValidationFailed"
        assert result.field == "therapist_id"

    def test_inactive_client_rejected(self, engine, seed):
        result = engine.create_session(
            actor_for(seed["secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            scheduled_date=NOW.date(), scheduled_time=time(9, 0),
            client_id=seed["clients"]["discharged"].id
        )
        assert result.kind == "ValidationFailed"

    def test_therapist_cannot_schedule(self, engine, seed):
        result = engine.create_session(
            actor_for(seed["licensed"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child"
        )
        assert result.kind == "Unauthorized"

    def test_secretary_limited_to_home_clinic(self, engine, seed):
        result = engine.create_session(
            actor_for(seed["south_secretary"]), clinic_id=seed["north"].id, therapist_id=seed["licensed"].id,
            scheduled_date=NOW.date(), scheduled_time=time(9, 0), client_name="Child"
        )
        assert result.kind == "Unauthorized"

class TestStart:
    def test_assigned_therapist_starts(self, machine, seed, book, clock):
        session = book()
        started = machine.start(actor_for(seed["licensed"]), session["id"])
        assert started.status == SessionStatus.IN_PROGRESS
        assert started.started_at == clock.now()
        assert started.started_by_id == seed["licensed"].id

    def test_other_therapist_cannot_start(self, machine, seed, book):
        session = book()
        with pytest.raises(Unauthorized):
            machine.start(actor_for(seed["speech"]), session["id"])

    def test_cannot_start_twice(self, machine, seed, book):
        session = book()
        machine.start(actor_for(seed["secretary"]), session["id"])
        with pytest.raises(InvalidStateTransition):
            machine.start(actor_for(seed["secretary"]), session["id"])

class TestConfirm:
    def test_confirm_keeps_in_progress(self, machine, seed, book):
        session = book()
        machine.start(actor_for(seed["licensed"]), session["id"])
        confirmed = machine.confirm(actor_for(seed["secretary"]), session["id"])

        assert confirmed.status == SessionStatus.IN_PROGRESS
        assert confirmed.verified_at is not None
        assert confirmed.verified_by_id == seed["secretary"].id

    def test_confirm_requires_started_session(self, machine, seed, book):
        session = book()
        with pytest.raises(InvalidStateTransition) as exc:
            machine.confirm(actor_for(seed["secretary"]), session["id"])
        assert "in progress" in exc.value.message

    def test_confirm_only_once(self, machine, seed, book):
        session = book()
        machine.start(actor_for(seed["licensed"]), session["id"])
        machine.confirm(actor_for(seed["secretary"]), session["id"])
        with pytest.raises(InvalidStateTransition) as exc:
            machine.confirm(actor_for(seed["owner"]), session["id"])
        assert "already" in exc.value.message

    def test_therapist_cannot_confirm(self, machine, seed, book):
        session = book()
        machine.start(actor_for(seed["licensed"]), session["id"])
        with pytest.raises(Unauthorized):
            machine.confirm(actor_for(seed["licensed"]), session["id"])

class TestCancel:
    def test_assigned_therapist_cancels_with_reason(self, machine, seed, book, clock):
        session = book()
        cancelled = machine.cancel(actor_for(seed["licensed"]), session["id"], "Client sick")
        assert cancelled.status == SessionStatus.CANCELLED
        assert cancelled.cancellation_reason == "Client sick"
        assert cancelled.cancelled_at == clock.now()

    def test_other_therapist_cannot_cancel(self, machine, seed, book):
        session = book()
        with pytest.raises(Unauthorized):
            machine.cancel(actor_for(seed["unlicensed"]), session["id"], "Not mine")

    def test_reason_required(self, machine, seed, book):
        session = book()
        with pytest.raises(ValidationFailed) as exc:
            machine.cancel(actor_for(seed["secretary"]), session["id"], "   ")
        assert exc.value.field == "reason"

    def test_only_scheduled_can_be_cancelled(self, machine, seed, book):
        session = book()
        machine.start(actor_for(seed["licensed"]), session["id"])
        with pytest.raises(InvalidStateTransition):
            machine.cancel(actor_for(seed["secretary"]), session["id"], "Too late")

    def test_completed_session_cannot_be_cancelled(self, machine, seed, book, db):
        session = book()
        db.query(SessionModel).filter(SessionModel.id == session["id"]).update(
            {SessionModel.status: SessionStatus.COMPLETED}
        )
        db.commit()

        with pytest.raises(InvalidStateTransition):
            machine.cancel(actor_for(seed["secretary"]), session["id"], "Too late")
        assert db.query(SessionModel).filter(SessionModel.id == session["id"]).one().status == SessionStatus.COMPLETED

    def test_second_cancel_is_rejected(self, machine, seed, book, db):
        session = book()
        machine.cancel(actor_for(seed["secretary"]), session["id"], "Client sick")
        db.commit()

        with pytest.raises(InvalidStateTransition):
            machine.cancel(actor_for(seed["secretary"]), session["id"], "Again")
        assert db.query(SessionModel).filter(
            SessionModel.id == session["id"]
        ).one().cancellation_reason == "Client sick"

    def test_manager_from_other_clinic_cannot_cancel(self, machine, seed, book):
        session = book()
        with pytest.raises(Unauthorized):
            machine.cancel(actor_for(seed["south_secretary"]), session["id"], "Wrong clinic")
