from datetime import date
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_engine.core.context import Actor, Clock
from clinic_engine.core.errors import (
    ConflictExists, CreditExhausted, InvalidStateTransition, NotFound, Unauthorized, ValidationFailed
)
from clinic_engine.core.permissions import Permission, can_access_clinic, has_permission
from clinic_engine.models.schema import (
    CreditType, Payment, PaymentMethod, PaymentSession, PaymentSource, PaymentStatus,
    Session as SessionModel, SessionStatus
)
from clinic_engine.utils.data_helpers import ClinicDataHelper

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

def per_session_amount(amount: Decimal, sessions_paid: int) -> Decimal:
    # Rounded down so the even split can never allocate more than the payment total
    return (Decimal(amount) / sessions_paid).quantize(CENT, rounding=ROUND_DOWN)

class CreditLedger:
    """Payments, advance-credit pools and the links that attribute them to sessions."""

    def __init__(self, db: Session, clock: Clock, max_sessions_paid: int = 10):
        self.db = db
        self.clock = clock
        self.max_sessions_paid = max_sessions_paid
        self.data = ClinicDataHelper(db)

    def _authorize(self, actor: Actor, permission: Permission, clinic_id: Optional[int] = None):
        if not has_permission(actor.role, permission):
            raise Unauthorized("Unauthorized")
        if clinic_id is not None and not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("You can only record payments for your assigned clinic")

    def _ensure_unlinked(self, session_id: int):
        linked = self.db.query(PaymentSession.id).filter(PaymentSession.session_id == session_id).first()
        if linked:
            raise ConflictExists("Session is already linked to a payment", field="session_id")

    def _insert_link(self, payment: Payment, session: SessionModel) -> PaymentSession:
        link = PaymentSession(
            payment_id=payment.id,
            session_id=session.id,
            amount=per_session_amount(payment.amount, payment.sessions_paid)
        )
        self.db.add(link)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConflictExists("Session is already linked to a payment", field="session_id") from exc
        return link

    def _payable_session(self, session_id: int, clinic_id: int, client_id: int) -> SessionModel:
        session = self.data.get_session(session_id)
        if not session:
            raise ValidationFailed("Session not found", field="session_id")
        if session.clinic_id != clinic_id:
            raise ValidationFailed("Session does not belong to the selected clinic", field="session_id")
        # Free-text (walk-in) sessions have no client id and cannot carry a client's payment
        if session.client_id != client_id:
            raise ValidationFailed("Session does not belong to the selected client", field="session_id")
        self._ensure_not_cancelled(session)
        return session

    @staticmethod
    def _ensure_not_cancelled(session: SessionModel):
        if session.status == SessionStatus.CANCELLED:
            raise ValidationFailed("Cannot pay for a cancelled session", field="session_id")

    def _validate_payment_shape(self, credit_type: CreditType, amount: Decimal, sessions_paid: int,
                                session_id: Optional[int]):
        if not 1 <= sessions_paid <= self.max_sessions_paid:
            raise ValidationFailed(f"Sessions paid must be between 1 and {self.max_sessions_paid}",
                                   field="sessions_paid")
        if credit_type == CreditType.NO_PAYMENT:
            if amount != 0:
                raise ValidationFailed("No-payment entries must have a zero amount", field="amount")
        elif amount <= 0:
            raise ValidationFailed("Amount must be positive", field="amount")
        if credit_type == CreditType.REGULAR and sessions_paid != 1:
            raise ValidationFailed("A regular payment covers exactly one session", field="sessions_paid")
        if credit_type != CreditType.ADVANCE and session_id is None:
            raise ValidationFailed("Session is required", field="session_id")

    def record_payment(self, actor: Actor, clinic_id: int, client_id: int, amount: Decimal,
                       method: PaymentMethod, session_id: Optional[int] = None,
                       source: PaymentSource = PaymentSource.CLIENT,
                       credit_type: CreditType = CreditType.REGULAR, sessions_paid: int = 1,
                       receipt_number: Optional[str] = None, notes: Optional[str] = None) -> Payment:
        """Create a completed payment and, when a session is given, its single link.

        Advance payments may be recorded as a bare block purchase; when one is
        recorded against a session that session consumes the first credit.
        """
        self._authorize(actor, Permission.COLLECT_PAYMENTS, clinic_id)

        amount = Decimal(amount)
        if credit_type == CreditType.NO_PAYMENT:
            method = PaymentMethod.NONE
        self._validate_payment_shape(credit_type, amount, sessions_paid, session_id)

        client = self.data.get_client(client_id)
        if not client:
            raise ValidationFailed("Client not found", field="client_id")

        session = None
        if session_id is not None:
            session = self._payable_session(session_id, clinic_id, client_id)
            self._ensure_unlinked(session.id)

        receipt_number = receipt_number.strip() if receipt_number else None
        if receipt_number:
            existing = self.db.query(Payment.id).filter(Payment.receipt_number == receipt_number).first()
            if existing:
                raise ConflictExists("Receipt number already exists", field="receipt_number")

        payment = Payment(
            clinic_id=clinic_id,
            client_id=client_id,
            amount=amount,
            method=method,
            source=source,
            credit_type=credit_type,
            sessions_paid=sessions_paid,
            sessions_used=1 if session is not None else 0,
            receipt_number=receipt_number,
            recorded_by_id=actor.id,
            payment_date=self.clock.now(),
            status=PaymentStatus.COMPLETED,
            notes=notes
        )
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConflictExists("Receipt number already exists", field="receipt_number") from exc

        if session is not None:
            self._insert_link(payment, session)

        logger.info(f"Payment {payment.id} recorded: {credit_type.value} {amount} for {sessions_paid} session(s)")
        return payment

    def link_session_to_advance_payment(self, actor: Actor, payment_id: int, session_id: int) -> PaymentSession:
        self._authorize(actor, Permission.COLLECT_PAYMENTS)

        payment = self.data.get_payment(payment_id)
        if not payment:
            raise NotFound("Payment not found", field="payment_id")
        if not can_access_clinic(actor.role, actor.home_clinic_id, payment.clinic_id):
            raise Unauthorized("You can only record payments for your assigned clinic")
        if payment.credit_type != CreditType.ADVANCE:
            raise ValidationFailed("This is not an advance payment", field="payment_id")
        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationFailed("Advance payment is not in a usable state", field="payment_id")

        session = self.data.get_session(session_id)
        if not session:
            raise NotFound("Session not found", field="session_id")
        if session.client_id != payment.client_id:
            raise ValidationFailed("Advance payment does not belong to the session's client", field="payment_id")
        if session.clinic_id != payment.clinic_id:
            raise ValidationFailed("Advance payment does not belong to the session's clinic", field="payment_id")
        self._ensure_not_cancelled(session)
        self._ensure_unlinked(session.id)

        # Check-and-consume in one conditional update; a concurrent linker sees 0 rows
        consumed = (
            self.db.query(Payment)
            .filter(
                Payment.id == payment.id,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.sessions_used < Payment.sessions_paid
            )
            .update({Payment.sessions_used: Payment.sessions_used + 1}, synchronize_session=False)
        )
        if consumed != 1:
            raise CreditExhausted("No remaining sessions on this advance payment", field="payment_id")
        self.db.refresh(payment)

        link = self._insert_link(payment, session)
        logger.info(f"Session {session.id} linked to advance payment {payment.id} "
                    f"({payment.sessions_paid - payment.sessions_used} remaining)")
        return link

    def advance_credit_summary(self, actor: Actor, client_id: int) -> List[Dict[str, Any]]:
        """Completed advance payments of a client that still have sessions left"""
        self._authorize(actor, Permission.VIEW_PAYMENTS)

        rows = (
            self.db.query(Payment, func.count(PaymentSession.id))
            .outerjoin(PaymentSession, PaymentSession.payment_id == Payment.id)
            .filter(
                Payment.client_id == client_id,
                Payment.credit_type == CreditType.ADVANCE,
                Payment.status == PaymentStatus.COMPLETED
            )
            .group_by(Payment.id)
            .order_by(Payment.payment_date, Payment.id)
            .all()
        )

        summary = []
        for payment, links in rows:
            if not can_access_clinic(actor.role, actor.home_clinic_id, payment.clinic_id):
                continue
            remaining = payment.sessions_paid - links
            if remaining <= 0:
                continue
            summary.append({
                "payment_id": payment.id,
                "clinic_id": payment.clinic_id,
                "amount": str(payment.amount),
                "per_session_amount": str(per_session_amount(payment.amount, payment.sessions_paid)),
                "sessions_paid": payment.sessions_paid,
                "sessions_used": links,
                "sessions_remaining": remaining,
                "payment_date": payment.payment_date.isoformat(),
                "receipt_number": payment.receipt_number,
            })
        return summary

    def void_payment(self, actor: Actor, payment_id: int, reason: Optional[str] = None) -> Payment:
        self._authorize(actor, Permission.MANAGE_PAYMENTS)

        payment = self.data.get_payment(payment_id)
        if not payment:
            raise NotFound("Payment not found", field="payment_id")
        if not can_access_clinic(actor.role, actor.home_clinic_id, payment.clinic_id):
            raise Unauthorized("Payment belongs to another clinic")

        voided = (
            self.db.query(Payment)
            .filter(
                Payment.id == payment.id,
                Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.COMPLETED])
            )
            .update({
                Payment.status: PaymentStatus.VOIDED,
                Payment.voided_at: self.clock.now(),
                Payment.voided_by_id: actor.id,
            }, synchronize_session=False)
        )
        if voided != 1:
            raise InvalidStateTransition("Payment is already voided", field="status")
        self.db.refresh(payment)

        if reason:
            payment.notes = f"{payment.notes}\n[voided] {reason}" if payment.notes else f"[voided] {reason}"
            self.db.flush()
        logger.info(f"Payment {payment.id} voided by staff {actor.id}")
        return payment

    def list_payments(self, actor: Actor, window: str, day: date,
                      clinic_id: Optional[int] = None) -> Dict[str, Any]:
        self._authorize(actor, Permission.VIEW_PAYMENTS)
        effective_clinic_id = clinic_id if clinic_id is not None else actor.home_clinic_id
        if effective_clinic_id is not None and not can_access_clinic(actor.role, actor.home_clinic_id, effective_clinic_id):
            raise Unauthorized("Unauthorized")
        if window not in ("day", "week", "month"):
            raise ValidationFailed("Window must be day, week or month", field="window")

        payments = self.data.get_payments_in_window(window, day, effective_clinic_id)
        total = sum(
            (Decimal(p.amount) for p in payments
             if p.credit_type != CreditType.NO_PAYMENT and p.status == PaymentStatus.COMPLETED),
            Decimal("0")
        )
        return {"payments": payments, "total": total}
