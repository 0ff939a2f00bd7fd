from datetime import date, time
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_engine.core.booking import BookingConflictChecker
from clinic_engine.core.context import Actor, Clock
from clinic_engine.core.errors import (
    ConflictExists, InvalidStateTransition, NotFound, Unauthorized, ValidationFailed
)
from clinic_engine.core.permissions import Permission, can_access_clinic, has_permission, is_therapist
from clinic_engine.models.schema import (
    Client, ClientStatus, Session as SessionModel, SessionStatus, SessionType, StaffMember
)

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 180

class SessionStateMachine:
    """Owns the lifecycle of a single session.

    scheduled -> in_progress (start), in_progress gets verified (confirm),
    scheduled -> cancelled (cancel). Every transition is a conditional
    single-row update on the current status, so a transition that loses a
    race, or is attempted from the wrong state, raises
    ``InvalidStateTransition`` instead of silently succeeding.
    """

    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock
        self.conflicts = BookingConflictChecker(db)

    def authorize_scheduling(self, actor: Actor, clinic_id: int):
        if not has_permission(actor.role, Permission.MANAGE_SESSIONS):
            raise Unauthorized("Unauthorized")
        if not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("You can only create sessions for your assigned clinic")

    def validate_booking(self, clinic_id: int, therapist_id: int, client_id: Optional[int],
                         client_name: Optional[str], duration_minutes: int) -> Optional[str]:
        """Check booking inputs; returns the cleaned free-text client name (or None)"""
        client_name = client_name.strip() if client_name else None
        if (client_id is None) == (client_name is None):
            raise ValidationFailed("Provide either a registered client or a client name, not both", field="client_id")

        if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
            raise ValidationFailed(
                f"Duration must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES} minutes",
                field="duration_minutes"
            )

        therapist = self.db.query(StaffMember).filter(StaffMember.id == therapist_id).first()
        if not therapist or not therapist.is_active or not is_therapist(therapist.role):
            raise ValidationFailed("Therapist not found or not an active therapist", field="therapist_id")

        if client_id is not None:
            client = self.db.query(Client).filter(Client.id == client_id).first()
            if not client:
                raise ValidationFailed("Client not found", field="client_id")
            if client.status != ClientStatus.ACTIVE:
                raise ValidationFailed("Client is not active", field="client_id")

        return client_name

    def create_session(self, clinic_id: int, therapist_id: int, session_date: date, session_time: time,
                       client_id: Optional[int] = None, client_name: Optional[str] = None,
                       session_type: SessionType = SessionType.REGULAR,
                       duration_minutes: int = 60) -> SessionModel:
        """Insert a scheduled session after the slot check; caller has already validated and authorized"""
        if self.conflicts.has_conflict(therapist_id, session_date, session_time):
            raise ConflictExists("Therapist already has a session at this time", field="scheduled_time")

        session = SessionModel(
            clinic_id=clinic_id,
            client_id=client_id,
            client_name=client_name,
            therapist_id=therapist_id,
            session_type=session_type,
            scheduled_date=session_date,
            scheduled_time=session_time,
            duration_minutes=duration_minutes,
            status=SessionStatus.SCHEDULED
        )
        self.db.add(session)
        try:
            self.db.flush()
        except IntegrityError as exc:
            # A concurrent booking won the slot between our check and insert
            raise ConflictExists("Therapist already has a session at this time", field="scheduled_time") from exc

        logger.info(f"Session {session.id} scheduled for therapist {therapist_id} on {session_date} {session_time}")
        return session

    def _load(self, session_id: int) -> SessionModel:
        session = self.db.query(SessionModel).filter(SessionModel.id == session_id).first()
        if not session:
            raise NotFound("Session not found", field="session_id")
        return session

    def _authorize_own_or_manager(self, actor: Actor, session: SessionModel, verb: str):
        if is_therapist(actor.role):
            if session.therapist_id != actor.id:
                raise Unauthorized(f"You can only {verb} your own sessions")
            return
        if not has_permission(actor.role, Permission.MANAGE_SESSIONS):
            raise Unauthorized("Unauthorized")
        if not can_access_clinic(actor.role, actor.home_clinic_id, session.clinic_id):
            raise Unauthorized("Session belongs to another clinic")

    def _transition(self, session: SessionModel, guard, values: dict, message: str):
        updated = (
            self.db.query(SessionModel)
            .filter(SessionModel.id == session.id, *guard)
            .update(values)
        )
        if updated != 1:
            raise InvalidStateTransition(message, field="status")
        self.db.refresh(session)
        return session

    def start(self, actor: Actor, session_id: int) -> SessionModel:
        session = self._load(session_id)
        self._authorize_own_or_manager(actor, session, "start")

        return self._transition(
            session,
            [SessionModel.status == SessionStatus.SCHEDULED],
            {
                SessionModel.status: SessionStatus.IN_PROGRESS,
                SessionModel.started_at: self.clock.now(),
                SessionModel.started_by_id: actor.id,
            },
            "Only scheduled sessions can be started"
        )

    def confirm(self, actor: Actor, session_id: int) -> SessionModel:
        """Record verification of a started session. Status stays in_progress."""
        if not has_permission(actor.role, Permission.VERIFY_SESSIONS):
            raise Unauthorized("Unauthorized")

        session = self._load(session_id)
        if not can_access_clinic(actor.role, actor.home_clinic_id, session.clinic_id):
            raise Unauthorized("Session belongs to another clinic")

        if session.status != SessionStatus.IN_PROGRESS:
            message = "Session must be in progress to confirm"
        elif session.started_at is None:
            message = "Session has not been started"
        elif session.verified_at is not None:
            message = "Session has already been confirmed"
        else:
            message = "Session could not be confirmed"

        return self._transition(
            session,
            [
                SessionModel.status == SessionStatus.IN_PROGRESS,
                SessionModel.started_at.isnot(None),
                SessionModel.verified_at.is_(None),
            ],
            {
                SessionModel.verified_at: self.clock.now(),
                SessionModel.verified_by_id: actor.id,
            },
            message
        )

    def cancel(self, actor: Actor, session_id: int, reason: Optional[str]) -> SessionModel:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailed("A cancellation reason is required", field="reason")

        session = self._load(session_id)
        self._authorize_own_or_manager(actor, session, "cancel")

        return self._transition(
            session,
            [SessionModel.status == SessionStatus.SCHEDULED],
            {
                SessionModel.status: SessionStatus.CANCELLED,
                SessionModel.cancelled_at: self.clock.now(),
                SessionModel.cancelled_by_id: actor.id,
                SessionModel.cancellation_reason: reason,
            },
            "Only scheduled sessions can be cancelled"
        )
