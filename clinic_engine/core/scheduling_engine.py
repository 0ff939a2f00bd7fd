from typing import List, Dict, Any, Optional, Callable
from datetime import date, time, datetime
from decimal import Decimal
from dataclasses import dataclass, field
import logging

from sqlalchemy.orm import Session

from clinic_engine.core.attendance import AttendanceReconciler
from clinic_engine.core.clients import ClientRegistry
from clinic_engine.core.config import Settings, get_settings
from clinic_engine.core.context import Actor, Clock, SystemClock
from clinic_engine.core.errors import ConflictExists, SchedulingError, Unauthorized, ValidationFailed
from clinic_engine.core.ledger import CreditLedger
from clinic_engine.core.permissions import Permission, can_access_clinic, has_permission, is_therapist
from clinic_engine.core.rates import RateResolver
from clinic_engine.core.session_machine import SessionStateMachine
from clinic_engine.models.schema import (
    CreditType, PaymentMethod, PaymentSource, SessionType, StaffRole
)
from clinic_engine.utils.audit import AuditSink, DatabaseAuditSink
from clinic_engine.utils.data_helpers import (
    ClinicDataHelper, attendance_to_dict, payment_to_dict, session_to_dict, unit_of_work
)

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "InternalError"

@dataclass
class UseCaseResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    kind: Optional[str] = None
    field: Optional[str] = None

class SchedulingEngine:
    """Entry point for every scheduling and payment use case.

    Each call runs in its own unit of work: component errors roll the unit
    back and come out as a failed ``UseCaseResult`` carrying the error kind,
    so callers never have to catch ``SchedulingError`` themselves.
    """

    def __init__(self, db: Session, clock: Optional[Clock] = None, audit_sink: Optional[AuditSink] = None,
                 settings: Optional[Settings] = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = audit_sink or DatabaseAuditSink(db)
        self.settings = settings or get_settings()

        self.data = ClinicDataHelper(db)
        self.rates = RateResolver(db)
        self.sessions = SessionStateMachine(db, self.clock)
        self.ledger = CreditLedger(db, self.clock, max_sessions_paid=self.settings.max_sessions_paid)
        self.attendance = AttendanceReconciler(db, self.clock)
        self.clients = ClientRegistry(db, self.clock)

    def _rejected(self, use_case: str, error: SchedulingError) -> UseCaseResult:
        logger.warning(f"{use_case} rejected ({error.kind}): {error.message}")
        return UseCaseResult(success=False, error=error.message, kind=error.kind, field=error.field)

    def _failed(self, use_case: str) -> UseCaseResult:
        logger.exception(f"{use_case} failed unexpectedly")
        return UseCaseResult(success=False, error=f"Internal error during {use_case}", kind=INTERNAL_ERROR)

    def _run(self, use_case: str, operation: Callable[[], Dict[str, Any]]) -> UseCaseResult:
        try:
            with unit_of_work(self.db):
                data = operation()
        except SchedulingError as e:
            return self._rejected(use_case, e)
        except Exception:
            return self._failed(use_case)

        logger.info(f"{use_case} succeeded")
        return UseCaseResult(success=True, data=data)

    # Sessions

    def create_session(self, actor: Actor, clinic_id: int, therapist_id: int, scheduled_date: date,
                       scheduled_time: time, client_id: Optional[int] = None, client_name: Optional[str] = None,
                       session_type: SessionType = SessionType.REGULAR, duration_minutes: Optional[int] = None,
                       advance_payment_id: Optional[int] = None) -> UseCaseResult:
        """Book one session; with ``advance_payment_id`` it also consumes one advance credit"""
        duration = duration_minutes if duration_minutes is not None else self.settings.default_session_minutes

        def operation():
            self.sessions.authorize_scheduling(actor, clinic_id)
            cleaned_name = self.sessions.validate_booking(clinic_id, therapist_id, client_id, client_name, duration)
            session = self.sessions.create_session(
                clinic_id, therapist_id, scheduled_date, scheduled_time,
                client_id=client_id, client_name=cleaned_name,
                session_type=session_type, duration_minutes=duration
            )
            result = {"session": session_to_dict(session), "payment_link": None}
            if advance_payment_id is not None:
                link = self.ledger.link_session_to_advance_payment(actor, advance_payment_id, session.id)
                result["payment_link"] = {
                    "payment_id": link.payment_id, "session_id": link.session_id, "amount": str(link.amount)
                }

            self.audit.record(
                actor, "session.created", "session", session.id,
                after=result["session"],
                description=f"Scheduled session for {session.display_client_name}",
                clinic_id=clinic_id
            )
            return result

        return self._run("create_session", operation)

    def create_multiple_sessions(self, actor: Actor, clinic_id: int, therapist_id: int, dates: List[date],
                                 scheduled_time: time, client_id: Optional[int] = None,
                                 client_name: Optional[str] = None,
                                 session_type: SessionType = SessionType.REGULAR,
                                 duration_minutes: Optional[int] = None) -> UseCaseResult:
        """Book the same slot on several dates; taken dates are skipped, not fatal.

        Each date commits on its own so one lost race does not undo the others.
        """
        duration = duration_minutes if duration_minutes is not None else self.settings.default_session_minutes

        try:
            self.sessions.authorize_scheduling(actor, clinic_id)
            if not dates:
                raise ValidationFailed("At least one date must be selected", field="dates")
            cleaned_name = self.sessions.validate_booking(clinic_id, therapist_id, client_id, client_name, duration)
            creatable, skipped = self.sessions.conflicts.partition_dates(therapist_id, dates, scheduled_time)
            self.db.rollback()

            created = []
            for session_date in creatable:
                try:
                    with unit_of_work(self.db):
                        session = self.sessions.create_session(
                            clinic_id, therapist_id, session_date, scheduled_time,
                            client_id=client_id, client_name=cleaned_name,
                            session_type=session_type, duration_minutes=duration
                        )
                        snapshot = session_to_dict(session)
                        self.audit.record(
                            actor, "session.created", "session", session.id, after=snapshot,
                            description=f"Scheduled session for {session.display_client_name} (bulk)",
                            clinic_id=clinic_id
                        )
                    created.append(snapshot)
                except ConflictExists:
                    skipped.append(session_date)

            if not created:
                raise ConflictExists(
                    "No sessions could be created - all selected slots are already booked", field="dates"
                )
        except SchedulingError as e:
            self.db.rollback()
            return self._rejected("create_multiple_sessions", e)
        except Exception:
            self.db.rollback()
            return self._failed("create_multiple_sessions")

        skipped_dates = sorted(d.isoformat() for d in skipped)
        warnings = [f"Slot already booked on {d}" for d in skipped_dates]
        logger.info(f"create_multiple_sessions created {len(created)}, skipped {len(skipped_dates)}")
        return UseCaseResult(
            success=True,
            data={"count": len(created), "sessions": created, "skipped_dates": skipped_dates},
            warnings=warnings
        )

    def _session_transition(self, use_case: str, action: str, actor: Actor, session_id: int,
                            transition: Callable[[], Any]) -> UseCaseResult:
        def operation():
            before = self.data.get_session(session_id)
            before_snapshot = session_to_dict(before) if before else None
            session = transition()
            after_snapshot = session_to_dict(session)
            self.audit.record(
                actor, action, "session", session.id,
                before=before_snapshot, after=after_snapshot, clinic_id=session.clinic_id
            )
            return {"session": after_snapshot}

        return self._run(use_case, operation)

    def start_session(self, actor: Actor, session_id: int) -> UseCaseResult:
        return self._session_transition(
            "start_session", "session.started", actor, session_id,
            lambda: self.sessions.start(actor, session_id)
        )

    def confirm_session(self, actor: Actor, session_id: int) -> UseCaseResult:
        return self._session_transition(
            "confirm_session", "session.confirmed", actor, session_id,
            lambda: self.sessions.confirm(actor, session_id)
        )

    def cancel_session(self, actor: Actor, session_id: int, reason: Optional[str]) -> UseCaseResult:
        return self._session_transition(
            "cancel_session", "session.cancelled", actor, session_id,
            lambda: self.sessions.cancel(actor, session_id, reason)
        )

    def _resolve_schedule_scope(self, actor: Actor, clinic_id: Optional[int],
                                therapist_id: Optional[int]):
        if is_therapist(actor.role):
            if not has_permission(actor.role, Permission.VIEW_OWN_SESSIONS):
                raise Unauthorized("Unauthorized")
            return None, actor.id

        if not has_permission(actor.role, Permission.VIEW_ALL_SESSIONS):
            raise Unauthorized("Unauthorized")
        effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id
        if effective_clinic_id is not None and not can_access_clinic(
                actor.role, actor.home_clinic_id, effective_clinic_id):
            raise Unauthorized("Unauthorized")
        return effective_clinic_id, therapist_id

    def schedule_scope(self, actor: Actor, clinic_id: Optional[int] = None,
                       therapist_id: Optional[int] = None) -> UseCaseResult:
        """The (clinic, therapist) view the actor is allowed to read"""
        def operation():
            scope_clinic_id, scope_therapist_id = self._resolve_schedule_scope(actor, clinic_id, therapist_id)
            return {"clinic_id": scope_clinic_id, "therapist_id": scope_therapist_id}

        return self._run("schedule_scope", operation)

    def day_schedule(self, actor: Actor, day: date, clinic_id: Optional[int] = None,
                     therapist_id: Optional[int] = None) -> UseCaseResult:
        """Sessions of a day; therapists only ever see their own"""
        def operation():
            effective_clinic_id, effective_therapist_id = self._resolve_schedule_scope(
                actor, clinic_id, therapist_id
            )
            sessions = self.data.get_sessions_for_day(day, effective_clinic_id, effective_therapist_id)
            loads = self.data.get_therapist_day_loads(day, effective_clinic_id)
            if effective_therapist_id is not None:
                loads = {k: v for k, v in loads.items() if k == effective_therapist_id}
            return {
                "day": day.isoformat(),
                "clinic_id": effective_clinic_id,
                "therapist_id": effective_therapist_id,
                "sessions": [session_to_dict(s) for s in sessions],
                "therapist_loads": {str(k): v for k, v in loads.items()},
            }

        return self._run("day_schedule", operation)

    def pending_confirmations(self, actor: Actor, clinic_id: Optional[int] = None) -> UseCaseResult:
        def operation():
            if not has_permission(actor.role, Permission.VERIFY_SESSIONS):
                raise Unauthorized("Unauthorized")
            effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id
            if effective_clinic_id is not None and not can_access_clinic(
                    actor.role, actor.home_clinic_id, effective_clinic_id):
                raise Unauthorized("Unauthorized")
            sessions = self.data.get_pending_confirmations(effective_clinic_id)
            return {"sessions": [session_to_dict(s) for s in sessions]}

        return self._run("pending_confirmations", operation)

    # Payments

    def record_payment(self, actor: Actor, clinic_id: int, client_id: int, amount: Decimal,
                       method: PaymentMethod, session_id: Optional[int] = None,
                       source: PaymentSource = PaymentSource.CLIENT,
                       credit_type: CreditType = CreditType.REGULAR, sessions_paid: int = 1,
                       receipt_number: Optional[str] = None, notes: Optional[str] = None) -> UseCaseResult:
        def operation():
            payment = self.ledger.record_payment(
                actor, clinic_id, client_id, amount, method,
                session_id=session_id, source=source, credit_type=credit_type,
                sessions_paid=sessions_paid, receipt_number=receipt_number, notes=notes
            )
            snapshot = payment_to_dict(payment)
            self.audit.record(
                actor, "payment.recorded", "payment", payment.id, after=snapshot,
                description=f"{credit_type.value} payment of {payment.amount}",
                clinic_id=clinic_id
            )
            return {"payment": snapshot, "session_id": session_id}

        return self._run("record_payment", operation)

    def link_advance_credit(self, actor: Actor, payment_id: int, session_id: int) -> UseCaseResult:
        def operation():
            link = self.ledger.link_session_to_advance_payment(actor, payment_id, session_id)
            payment = link.payment
            self.audit.record(
                actor, "payment.credit_linked", "payment", payment.id,
                after={"session_id": session_id, "amount": link.amount, "sessions_used": payment.sessions_used},
                description=f"Session {session_id} paid from advance credit",
                clinic_id=payment.clinic_id
            )
            return {
                "payment_id": payment.id,
                "session_id": session_id,
                "amount": str(link.amount),
                "sessions_remaining": payment.sessions_paid - payment.sessions_used,
            }

        return self._run("link_advance_credit", operation)

    def advance_credit_summary(self, actor: Actor, client_id: int) -> UseCaseResult:
        def operation():
            credits = self.ledger.advance_credit_summary(actor, client_id)
            return {
                "client_id": client_id,
                "advance_payments": credits,
                "total_sessions_remaining": sum(c["sessions_remaining"] for c in credits),
            }

        return self._run("advance_credit_summary", operation)

    def void_payment(self, actor: Actor, payment_id: int, reason: Optional[str] = None) -> UseCaseResult:
        def operation():
            before = self.data.get_payment(payment_id)
            before_snapshot = payment_to_dict(before) if before else None
            payment = self.ledger.void_payment(actor, payment_id, reason)
            snapshot = payment_to_dict(payment)
            self.audit.record(
                actor, "payment.voided", "payment", payment.id,
                before=before_snapshot, after=snapshot, description=reason or "", clinic_id=payment.clinic_id
            )
            return {"payment": snapshot}

        return self._run("void_payment", operation)

    def list_payments(self, actor: Actor, window: str, day: date, clinic_id: Optional[int] = None) -> UseCaseResult:
        def operation():
            listing = self.ledger.list_payments(actor, window, day, clinic_id)
            return {
                "window": window,
                "day": day.isoformat(),
                "payments": [payment_to_dict(p) for p in listing["payments"]],
                "total": str(listing["total"]),
            }

        return self._run("list_payments", operation)

    # Attendance and income

    @staticmethod
    def _report_clinic(actor: Actor, clinic_id: Optional[int]) -> Optional[int]:
        return clinic_id if clinic_id is not None else actor.home_clinic_id

    def income_scope(self, actor: Actor, clinic_id: Optional[int] = None) -> UseCaseResult:
        """The clinic whose income figures the actor may read"""
        def operation():
            if not has_permission(actor.role, Permission.VIEW_FINANCIAL_REPORTS):
                raise Unauthorized("Unauthorized")
            effective_clinic_id = self._report_clinic(actor, clinic_id)
            if effective_clinic_id is not None and not can_access_clinic(
                    actor.role, actor.home_clinic_id, effective_clinic_id):
                raise Unauthorized("Unauthorized")
            return {"clinic_id": effective_clinic_id}

        return self._run("income_scope", operation)

    def log_attendance(self, actor: Actor, clinic_id: int, client_id: int, guardian_name: str,
                       guardian_relation: Optional[str] = None, primary_therapist_id: Optional[int] = None,
                       notes: Optional[str] = None) -> UseCaseResult:
        def operation():
            log = self.attendance.log_visit(
                actor, clinic_id, client_id, guardian_name,
                guardian_relation=guardian_relation, primary_therapist_id=primary_therapist_id, notes=notes
            )
            snapshot = attendance_to_dict(log)
            self.audit.record(
                actor, "attendance.logged", "attendance_log", log.id, after=snapshot, clinic_id=clinic_id
            )
            return {"attendance": snapshot}

        return self._run("log_attendance", operation)

    def mark_attendance_paid(self, actor: Actor, log_id: int, method: Any = None) -> UseCaseResult:
        def operation():
            log, payment = self.attendance.mark_paid(actor, log_id, method)
            snapshot = attendance_to_dict(log)
            if payment is None:
                return {"attendance": snapshot, "payment": None, "already_paid": True}

            payment_snapshot = payment_to_dict(payment)
            self.audit.record(
                actor, "attendance.paid", "attendance_log", log.id,
                before={"payment_status": "UNPAID"},
                after={"payment_status": log.payment_status, "payment_id": payment.id, "amount": payment.amount},
                description=f"Attendance payment via {payment.method.value}",
                clinic_id=log.clinic_id
            )
            return {"attendance": snapshot, "payment": payment_snapshot, "already_paid": False}

        return self._run("mark_attendance_paid", operation)

    def list_attendance(self, actor: Actor, day: date, window: Optional[str] = "day",
                        clinic_id: Optional[int] = None) -> UseCaseResult:
        def operation():
            logs = self.attendance.list_attendance(actor, window, day, clinic_id)
            return {"attendance": [attendance_to_dict(log) for log in logs]}

        return self._run("list_attendance", operation)

    def expected_income(self, actor: Actor, day: date, clinic_id: Optional[int] = None) -> UseCaseResult:
        def operation():
            amount = self.attendance.expected_income(actor, day, clinic_id)
            return {
                "day": day.isoformat(),
                "clinic_id": self._report_clinic(actor, clinic_id),
                "expected_income": str(amount),
            }

        return self._run("expected_income", operation)

    def daily_revenue(self, actor: Actor, day: date, clinic_id: Optional[int] = None) -> UseCaseResult:
        def operation():
            amount = self.attendance.daily_revenue(actor, day, clinic_id)
            return {
                "day": day.isoformat(),
                "clinic_id": self._report_clinic(actor, clinic_id),
                "actual_revenue": str(amount),
            }

        return self._run("daily_revenue", operation)

    def daily_income_summary(self, actor: Actor, day: date, clinic_id: Optional[int] = None) -> UseCaseResult:
        """Collected revenue next to what unpaid visits of the day would still bring in"""
        def operation():
            actual = self.attendance.daily_revenue(actor, day, clinic_id)
            expected = self.attendance.expected_income(actor, day, clinic_id)
            return {
                "day": day.isoformat(),
                "clinic_id": self._report_clinic(actor, clinic_id),
                "actual_revenue": str(actual),
                "expected_income": str(expected),
            }

        return self._run("daily_income_summary", operation)

    # Rates

    def get_session_rate(self, actor: Actor, clinic_id: int, role: StaffRole,
                         as_of: Optional[datetime] = None) -> UseCaseResult:
        def operation():
            if not has_permission(actor.role, Permission.VIEW_PAYMENTS):
                raise Unauthorized("Unauthorized")
            amount = self.rates.resolve_rate(clinic_id, role, as_of or self.clock.now())
            return {"clinic_id": clinic_id, "therapist_role": role.value, "rate": str(amount)}

        return self._run("get_session_rate", operation)

    def set_session_rate(self, actor: Actor, clinic_id: int, role: StaffRole, amount: Decimal,
                         effective_from: Optional[datetime] = None) -> UseCaseResult:
        def operation():
            if not has_permission(actor.role, Permission.MANAGE_RATES):
                raise Unauthorized("Unauthorized")
            if not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
                raise Unauthorized("Unauthorized")
            rate = self.rates.set_rate(clinic_id, role, amount, effective_from or self.clock.now())
            snapshot = {
                "id": rate.id,
                "clinic_id": rate.clinic_id,
                "therapist_role": rate.therapist_role.value,
                "rate_amount": str(rate.rate_amount),
                "effective_from": rate.effective_from.isoformat(),
            }
            self.audit.record(actor, "rate.set", "session_rate", rate.id, after=snapshot, clinic_id=clinic_id)
            return {"rate": snapshot}

        return self._run("set_session_rate", operation)

    # Clients

    def create_client(self, actor: Actor, clinic_id: int, first_name: str, last_name: str, guardian_name: str,
                      guardian_phone: Optional[str] = None, guardian_relation: Optional[str] = None,
                      primary_therapist_id: Optional[int] = None, notes: Optional[str] = None) -> UseCaseResult:
        def operation():
            client = self.clients.create_client(
                actor, clinic_id, first_name, last_name, guardian_name,
                guardian_phone=guardian_phone, guardian_relation=guardian_relation,
                primary_therapist_id=primary_therapist_id, notes=notes
            )
            snapshot = self._client_snapshot(client)
            self.audit.record(actor, "client.created", "client", client.id, after=snapshot, clinic_id=clinic_id)
            return {"client": snapshot}

        return self._run("create_client", operation)

    def update_client(self, actor: Actor, client_id: int, changes: Dict[str, Any]) -> UseCaseResult:
        def operation():
            current = self.data.get_client(client_id)
            before = self._client_snapshot(current) if current else None
            client = self.clients.update_client(actor, client_id, changes)
            after = self._client_snapshot(client)
            self.audit.record(
                actor, "client.updated", "client", client.id, before=before, after=after,
                clinic_id=client.main_clinic_id
            )
            return {"client": after}

        return self._run("update_client", operation)

    @staticmethod
    def _client_snapshot(client) -> Dict[str, Any]:
        return {
            "id": client.id,
            "first_name": client.first_name,
            "last_name": client.last_name,
            "guardian_name": client.guardian_name,
            "guardian_phone": client.guardian_phone,
            "guardian_relation": client.guardian_relation,
            "main_clinic_id": client.main_clinic_id,
            "primary_therapist_id": client.primary_therapist_id,
            "status": client.status.value,
            "discharge_date": client.discharge_date.isoformat() if client.discharge_date else None,
        }

    def add_backup_therapist(self, actor: Actor, client_id: int, therapist_id: int) -> UseCaseResult:
        def operation():
            backup = self.clients.add_backup_therapist(actor, client_id, therapist_id)
            self.audit.record(
                actor, "client.backup_added", "client", client_id,
                after={"therapist_id": therapist_id, "priority": backup.priority}
            )
            return {"client_id": client_id, "therapist_id": therapist_id, "priority": backup.priority}

        return self._run("add_backup_therapist", operation)

    def remove_backup_therapist(self, actor: Actor, client_id: int, therapist_id: int) -> UseCaseResult:
        def operation():
            remaining = self.clients.remove_backup_therapist(actor, client_id, therapist_id)
            backups = [{"therapist_id": b.therapist_id, "priority": b.priority} for b in remaining]
            self.audit.record(
                actor, "client.backup_removed", "client", client_id,
                before={"therapist_id": therapist_id}, after={"backups": backups}
            )
            return {"client_id": client_id, "backup_therapists": backups}

        return self._run("remove_backup_therapist", operation)
