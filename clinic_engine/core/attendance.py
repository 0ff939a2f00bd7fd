from datetime import date
from decimal import Decimal
from typing import Optional, Tuple, Union
import logging

from sqlalchemy.orm import Session

from clinic_engine.core.context import Actor, Clock, day_bounds
from clinic_engine.core.errors import NoRateConfigured, NotFound, Unauthorized, ValidationFailed
from clinic_engine.core.permissions import Permission, can_access_clinic, has_permission
from clinic_engine.core.rates import CachedRateLookup, RateResolver
from clinic_engine.models.schema import (
    AttendanceLog, AttendancePaymentStatus, CreditType, Payment, PaymentMethod, PaymentSession,
    PaymentSource, PaymentStatus, Session as SessionModel, StaffRole
)
from clinic_engine.utils.data_helpers import ClinicDataHelper

logger = logging.getLogger(__name__)

ATTENDANCE_NOTE_PREFIX = "[attendance-log:"

def coerce_payment_method(method: Union[PaymentMethod, str, None]) -> PaymentMethod:
    """Unknown or missing methods are recorded as cash"""
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method)
    except ValueError:
        return PaymentMethod.CASH

def billing_role(log: AttendanceLog) -> Optional[StaffRole]:
    """Role that prices a visit: the logged therapist, else the client's primary therapist"""
    if log.primary_therapist is not None:
        return log.primary_therapist.role
    if log.client is not None and log.client.primary_therapist is not None:
        return log.client.primary_therapist.role
    return None

class AttendanceReconciler:
    """Walk-in visit records and their payment status."""

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock
        self.rates = RateResolver(db)
        self.data = ClinicDataHelper(db)

    def has_linked_paid_session(self, clinic_id: int, client_id: int, day: date) -> bool:
        """True when a completed payment covers a session of this client+clinic scheduled that day"""
        linked = (
            self.db.query(PaymentSession.id)
            .join(Payment, PaymentSession.payment_id == Payment.id)
            .join(SessionModel, PaymentSession.session_id == SessionModel.id)
            .filter(
                Payment.status == PaymentStatus.COMPLETED,
                Payment.clinic_id == clinic_id,
                SessionModel.clinic_id == clinic_id,
                SessionModel.client_id == client_id,
                SessionModel.scheduled_date == day
            )
            .first()
        )
        return linked is not None

    def log_visit(self, actor: Actor, clinic_id: int, client_id: int, guardian_name: str,
                  guardian_relation: Optional[str] = None, primary_therapist_id: Optional[int] = None,
                  notes: Optional[str] = None) -> AttendanceLog:
        if not has_permission(actor.role, Permission.MANAGE_ATTENDANCE):
            raise Unauthorized("Unauthorized")
        if not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("You can only log attendance for your assigned clinic")

        guardian_name = (guardian_name or "").strip()
        if not guardian_name:
            raise ValidationFailed("Guardian name is required", field="guardian_name")

        client = self.data.get_client(client_id)
        if not client:
            raise ValidationFailed("Client not found", field="client_id")
        if primary_therapist_id is not None:
            therapist = self.data.get_staff(primary_therapist_id)
            if not therapist:
                raise ValidationFailed("Therapist not found", field="primary_therapist_id")

        log = AttendanceLog(
            clinic_id=clinic_id,
            client_id=client_id,
            guardian_name=guardian_name,
            guardian_relation=guardian_relation or None,
            primary_therapist_id=primary_therapist_id,
            logged_by_id=actor.id,
            logged_at=self.clock.now(),
            notes=notes,
            payment_status=AttendancePaymentStatus.UNPAID
        )
        self.db.add(log)
        self.db.flush()

        if self.has_linked_paid_session(clinic_id, client_id, log.logged_at.date()):
            log.payment_status = AttendancePaymentStatus.PAID
            self.db.flush()
            logger.info(f"Attendance {log.id} covered by a same-day paid session")

        return log

    def mark_paid(self, actor: Actor, log_id: int,
                  method: Union[PaymentMethod, str, None] = None) -> Tuple[AttendanceLog, Optional[Payment]]:
        """Collect the visit fee. Returns (log, payment); payment is None when the log was already paid."""
        if not has_permission(actor.role, Permission.COLLECT_PAYMENTS):
            raise Unauthorized("Unauthorized")

        log = self.data.get_attendance_log(log_id)
        if not log:
            raise NotFound("Attendance log not found", field="attendance_log_id")
        if not can_access_clinic(actor.role, actor.home_clinic_id, log.clinic_id):
            raise Unauthorized("You can only record payments for your assigned clinic")

        if log.payment_status == AttendancePaymentStatus.PAID:
            return log, None

        now = self.clock.now()
        amount = self.rates.resolve_rate(log.clinic_id, billing_role(log), now)
        if amount <= 0:
            raise NoRateConfigured("No active session rate found for this attendance record")

        payment = Payment(
            clinic_id=log.clinic_id,
            client_id=log.client_id,
            amount=amount,
            method=coerce_payment_method(method),
            source=PaymentSource.CLIENT,
            credit_type=CreditType.REGULAR,
            sessions_paid=1,
            sessions_used=0,
            recorded_by_id=actor.id,
            payment_date=now,
            status=PaymentStatus.COMPLETED,
            notes=f"{ATTENDANCE_NOTE_PREFIX}{log.id}] Attendance payment"
        )
        self.db.add(payment)
        self.db.flush()

        flipped = (
            self.db.query(AttendanceLog)
            .filter(
                AttendanceLog.id == log.id,
                AttendanceLog.payment_status == AttendancePaymentStatus.UNPAID
            )
            .update({
                AttendanceLog.payment_status: AttendancePaymentStatus.PAID,
                AttendanceLog.payment_id: payment.id,
            }, synchronize_session=False)
        )
        if flipped != 1:
            # Paid by a concurrent request; drop our payment so only one exists
            self.db.delete(payment)
            self.db.flush()
            self.db.refresh(log)
            return log, None

        self.db.refresh(log)
        logger.info(f"Attendance {log.id} marked paid with payment {payment.id} ({amount})")
        return log, payment

    def expected_income(self, actor: Actor, day: date, clinic_id: Optional[int] = None) -> Decimal:
        """Sum of resolved rates over the day's unpaid attendance logs"""
        self._authorize_reports(actor, clinic_id)
        effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id

        start, end = day_bounds(day)
        query = self.db.query(AttendanceLog).filter(
            AttendanceLog.logged_at >= start,
            AttendanceLog.logged_at < end,
            AttendanceLog.payment_status == AttendancePaymentStatus.UNPAID
        )
        if effective_clinic_id is not None:
            query = query.filter(AttendanceLog.clinic_id == effective_clinic_id)
        logs = query.all()
        if not logs:
            return Decimal("0")

        lookup = CachedRateLookup(self.rates, self.clock.now())
        return sum((lookup.rate_for(log.clinic_id, billing_role(log)) for log in logs), Decimal("0"))

    def daily_revenue(self, actor: Actor, day: date, clinic_id: Optional[int] = None) -> Decimal:
        self._authorize_reports(actor, clinic_id)
        effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id
        return Decimal(str(self.data.get_daily_revenue(day, effective_clinic_id)))

    def list_attendance(self, actor: Actor, window: Optional[str], day: date,
                        clinic_id: Optional[int] = None):
        if not has_permission(actor.role, Permission.MANAGE_ATTENDANCE):
            raise Unauthorized("Unauthorized")
        if clinic_id is not None and not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("Unauthorized")
        if window not in (None, "day", "week", "month"):
            raise ValidationFailed("Window must be day, week, month or omitted", field="window")
        effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id
        return self.data.get_attendance_in_window(window, day, effective_clinic_id)

    def _authorize_reports(self, actor: Actor, clinic_id: Optional[int]):
        if not has_permission(actor.role, Permission.VIEW_FINANCIAL_REPORTS):
            raise Unauthorized("Unauthorized")
        if clinic_id is not None and not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("Unauthorized")
