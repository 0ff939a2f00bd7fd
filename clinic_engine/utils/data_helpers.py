from contextlib import contextmanager
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, func
from typing import List, Dict, Any, Optional
from datetime import date

from clinic_engine.models.schema import (
    Client, StaffMember, Session as SessionModel, SessionStatus, Payment, PaymentStatus,
    CreditType, AttendanceLog
)
from clinic_engine.core.context import day_bounds, window_bounds

def get_db():
    from clinic_engine.core.config import get_database_session
    db = get_database_session()
    try:
        yield db
    finally:
        db.close()

@contextmanager
def unit_of_work(db: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise

def session_to_dict(session: SessionModel) -> Dict[str, Any]:
    return {
        "id": session.id,
        "clinic_id": session.clinic_id,
        "client_id": session.client_id,
        "client_name": session.display_client_name,
        "therapist_id": session.therapist_id,
        "session_type": session.session_type.value,
        "scheduled_date": session.scheduled_date.isoformat(),
        "scheduled_time": session.scheduled_time.strftime("%H:%M"),
        "duration_minutes": session.duration_minutes,
        "status": session.status.value,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "started_by_id": session.started_by_id,
        "verified_at": session.verified_at.isoformat() if session.verified_at else None,
        "verified_by_id": session.verified_by_id,
        "cancelled_at": session.cancelled_at.isoformat() if session.cancelled_at else None,
        "cancelled_by_id": session.cancelled_by_id,
        "cancellation_reason": session.cancellation_reason,
    }

def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "clinic_id": payment.clinic_id,
        "client_id": payment.client_id,
        "amount": str(payment.amount),
        "method": payment.method.value,
        "source": payment.source.value,
        "credit_type": payment.credit_type.value,
        "sessions_paid": payment.sessions_paid,
        "sessions_used": payment.sessions_used,
        "receipt_number": payment.receipt_number,
        "recorded_by_id": payment.recorded_by_id,
        "payment_date": payment.payment_date.isoformat(),
        "status": payment.status.value,
        "notes": payment.notes,
    }

def attendance_to_dict(log: AttendanceLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "clinic_id": log.clinic_id,
        "client_id": log.client_id,
        "guardian_name": log.guardian_name,
        "guardian_relation": log.guardian_relation,
        "primary_therapist_id": log.primary_therapist_id,
        "logged_by_id": log.logged_by_id,
        "logged_at": log.logged_at.isoformat(),
        "notes": log.notes,
        "payment_status": log.payment_status.value,
        "payment_id": log.payment_id,
    }

class ClinicDataHelper:
    def __init__(self, db: Session):
        self.db = db

    def get_staff(self, staff_id: int) -> Optional[StaffMember]:
        return self.db.query(StaffMember).filter(StaffMember.id == staff_id).first()

    def get_client(self, client_id: int) -> Optional[Client]:
        return (
            self.db.query(Client)
            .options(joinedload(Client.primary_therapist))
            .filter(Client.id == client_id)
            .first()
        )

    def get_session(self, session_id: int) -> Optional[SessionModel]:
        return self.db.query(SessionModel).filter(SessionModel.id == session_id).first()

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.id == payment_id).first()

    def get_attendance_log(self, log_id: int) -> Optional[AttendanceLog]:
        return (
            self.db.query(AttendanceLog)
            .options(
                joinedload(AttendanceLog.primary_therapist),
                joinedload(AttendanceLog.client).joinedload(Client.primary_therapist)
            )
            .filter(AttendanceLog.id == log_id)
            .first()
        )

    def get_sessions_for_day(self, day: date, clinic_id: Optional[int] = None,
                             therapist_id: Optional[int] = None) -> List[SessionModel]:
        """Day schedule ordered by time, optionally narrowed to a clinic and a therapist"""
        query = (
            self.db.query(SessionModel)
            .options(joinedload(SessionModel.client))
            .filter(SessionModel.scheduled_date == day)
        )
        if clinic_id is not None:
            query = query.filter(SessionModel.clinic_id == clinic_id)
        if therapist_id is not None:
            query = query.filter(SessionModel.therapist_id == therapist_id)
        return query.order_by(SessionModel.scheduled_time, SessionModel.id).all()

    def get_pending_confirmations(self, clinic_id: Optional[int] = None) -> List[SessionModel]:
        """Sessions started but not yet verified, oldest start first"""
        query = self.db.query(SessionModel).filter(
            SessionModel.status == SessionStatus.IN_PROGRESS,
            SessionModel.started_at.isnot(None),
            SessionModel.verified_at.is_(None)
        )
        if clinic_id is not None:
            query = query.filter(SessionModel.clinic_id == clinic_id)
        return query.order_by(SessionModel.started_at).all()

    def get_payments_in_window(self, window: str, day: date, clinic_id: Optional[int] = None) -> List[Payment]:
        start, end = window_bounds(window, day)
        query = self.db.query(Payment).filter(Payment.payment_date >= start, Payment.payment_date < end)
        if clinic_id is not None:
            query = query.filter(Payment.clinic_id == clinic_id)
        return query.order_by(Payment.payment_date.desc(), Payment.id.desc()).all()

    def get_attendance_in_window(self, window: Optional[str], day: date,
                                 clinic_id: Optional[int] = None) -> List[AttendanceLog]:
        query = self.db.query(AttendanceLog)
        if window is not None:
            start, end = window_bounds(window, day)
            query = query.filter(AttendanceLog.logged_at >= start, AttendanceLog.logged_at < end)
        if clinic_id is not None:
            query = query.filter(AttendanceLog.clinic_id == clinic_id)
        return query.order_by(AttendanceLog.logged_at.desc(), AttendanceLog.id.desc()).all()

    def get_daily_revenue(self, day: date, clinic_id: Optional[int] = None):
        """Sum of completed payments dated that day, excluding no-charge entries"""
        start, end = day_bounds(day)
        query = self.db.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
            and_(
                Payment.payment_date >= start,
                Payment.payment_date < end,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.credit_type != CreditType.NO_PAYMENT
            )
        )
        if clinic_id is not None:
            query = query.filter(Payment.clinic_id == clinic_id)
        return query.scalar()

    def get_therapist_day_loads(self, day: date, clinic_id: Optional[int] = None) -> Dict[int, int]:
        """Active session counts per therapist for a day"""
        query = (
            self.db.query(SessionModel.therapist_id, func.count(SessionModel.id))
            .filter(
                SessionModel.scheduled_date == day,
                SessionModel.status.notin_([SessionStatus.CANCELLED, SessionStatus.NO_SHOW])
            )
        )
        if clinic_id is not None:
            query = query.filter(SessionModel.clinic_id == clinic_id)
        loads = query.group_by(SessionModel.therapist_id).all()
        return {therapist_id: count for therapist_id, count in loads}
