from datetime import date, datetime
from decimal import Decimal

from clinic_engine.core.attendance import ATTENDANCE_NOTE_PREFIX, coerce_payment_method
from clinic_engine.models.schema import (
    AttendanceLog, AttendancePaymentStatus, Payment, PaymentMethod, SessionRate, StaffRole
)

from conftest import actor_for

def log_visit(engine, seed, client=None, **kwargs):
    client = client or seed["clients"]["client"]
    result = engine.log_attendance(
        actor_for(seed["secretary"]),
        clinic_id=seed["north"].id,
        client_id=client.id,
        guardian_name=client.guardian_name,
        **kwargs
    )
    assert result.success, result.error
    return result.data["attendance"]

def test_unknown_method_falls_back_to_cash():
    assert coerce_payment_method("bank_transfer") == PaymentMethod.BANK_TRANSFER
    assert coerce_payment_method("bitcoin") == PaymentMethod.CASH
    assert coerce_payment_method(None) == PaymentMethod.CASH

def test_new_visit_is_unpaid(engine, seed):
    log = log_visit(engine, seed)
    assert log["payment_status"] == "UNPAID"
    assert log["payment_id"] is None

def test_visit_with_same_day_paid_session_is_auto_paid(engine, seed, book):
    session = book()
    paid = engine.record_payment(
        actor_for(seed["secretary"]), clinic_id=seed["north"].id, client_id=seed["clients"]["client"].id,
        amount=Decimal("700"), method=PaymentMethod.CASH, session_id=session["id"]
    )
    assert paid.success

    log = log_visit(engine, seed)
    assert log["payment_status"] == "PAID"

def test_paid_session_on_another_day_does_not_cover_visit(engine, seed, book):
    session = book(session_date=date(2025, 3, 11))
    engine.record_payment(
        actor_for(seed["secretary"]), clinic_id=seed["north"].id, client_id=seed["clients"]["client"].id,
        amount=Decimal("700"), method=PaymentMethod.CASH, session_id=session["id"]
    )

    log = log_visit(engine, seed)
    assert log["payment_status"] == "UNPAID"

def test_guardian_name_required(engine, seed):
    result = engine.log_attendance(
        actor_for(seed["secretary"]), clinic_id=seed["north"].id,
        client_id=seed["clients"]["client"].id, guardian_name="  "
    )
    assert result.kind == "ValidationFailed"
    assert result.field == "guardian_name"

def test_mark_paid_creates_rate_priced_payment(engine, seed, db, audit_sink):
    log = log_visit(engine, seed)
    result = engine.mark_attendance_paid(actor_for(seed["secretary"]), log["id"], "bitcoin")

    assert result.success, result.error
    assert result.data["already_paid"] is False
    assert result.data["attendance"]["payment_status"] == "PAID"
    payment = result.data["payment"]
    assert Decimal(payment["amount"]) == Decimal("700")
    assert payment["method"] == "cash"
    assert payment["sessions_paid"] == 1
    assert payment["credit_type"] == "regular"
    assert payment["notes"].startswith(f"{ATTENDANCE_NOTE_PREFIX}{log['id']}]")
    assert result.data["attendance"]["payment_id"] == payment["id"]
    assert "attendance.paid" in audit_sink.actions()

def test_mark_paid_is_idempotent(engine, seed, db):
    log = log_visit(engine, seed)
    actor = actor_for(seed["secretary"])
    engine.mark_attendance_paid(actor, log["id"], "cash")

    again = engine.mark_attendance_paid(actor, log["id"], "cash")
    assert again.success
    assert again.data["already_paid"] is True
    assert again.data["payment"] is None
    assert db.query(Payment).count() == 1

def test_mark_paid_uses_logged_therapist_role(engine, seed, db):
    db.add(SessionRate(clinic_id=seed["north"].id, therapist_role=StaffRole.SPEECH_THERAPIST,
                       rate_amount=Decimal("500"), effective_from=datetime(2024, 1, 1)))
    db.commit()
    log = log_visit(engine, seed, primary_therapist_id=seed["speech"].id)

    result = engine.mark_attendance_paid(actor_for(seed["secretary"]), log["id"], "electronic")
    assert Decimal(result.data["payment"]["amount"]) == Decimal("500")

def test_mark_paid_without_rate_fails(engine, seed, db):
    log = log_visit(engine, seed, client=seed["clients"]["speech_client"])

    result = engine.mark_attendance_paid(actor_for(seed["secretary"]), log["id"], "cash")
    assert result.kind == "NoRateConfigured"
    stored = db.query(AttendanceLog).filter(AttendanceLog.id == log["id"]).one()
    assert stored.payment_status == AttendancePaymentStatus.UNPAID
    assert db.query(Payment).count() == 0

def test_mark_paid_missing_log(engine, seed):
    result = engine.mark_attendance_paid(actor_for(seed["secretary"]), 999, "cash")
    assert result.kind == "NotFound"

def test_expected_income_sums_unpaid_visits(engine, seed, db, clock):
    db.add(SessionRate(clinic_id=seed["north"].id, therapist_role=StaffRole.SPEECH_THERAPIST,
                       rate_amount=Decimal("500"), effective_from=datetime(2024, 1, 1)))
    db.commit()
    first = log_visit(engine, seed)
    log_visit(engine, seed)
    log_visit(engine, seed, client=seed["clients"]["speech_client"])
    engine.mark_attendance_paid(actor_for(seed["secretary"]), first["id"], "cash")

    owner = actor_for(seed["owner"])
    expected = engine.expected_income(owner, clock.now().date(), seed["north"].id)
    assert Decimal(expected.data["expected_income"]) == Decimal("1200")

    summary = engine.daily_income_summary(owner, clock.now().date(), seed["north"].id)
    assert Decimal(summary.data["actual_revenue"]) == Decimal("700")
    assert Decimal(summary.data["expected_income"]) == Decimal("1200")

def test_expected_income_requires_financial_reports(engine, seed, clock):
    result = engine.expected_income(actor_for(seed["secretary"]), clock.now().date(), seed["north"].id)
    assert result.kind == "Unauthorized"

def test_list_attendance_for_day(engine, seed, clock):
    log_visit(engine, seed)
    log_visit(engine, seed, client=seed["clients"]["speech_client"])

    result = engine.list_attendance(actor_for(seed["secretary"]), clock.now().date())
    assert len(result.data["attendance"]) == 2
