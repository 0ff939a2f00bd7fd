from fastapi import APIRouter, HTTPException, Depends, Header
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from clinic_engine.core.context import Actor
from clinic_engine.core.scheduling_engine import SchedulingEngine, UseCaseResult
from clinic_engine.models.schema import StaffMember, StaffRole
from clinic_engine.utils.data_helpers import get_db
from clinic_engine.utils.redis_helper import redis_helper
from clinic_engine.utils.validators import (
    AdvanceLinkRequest, AttendanceLogRequest, BackupTherapistRequest, BulkSessionCreateRequest, CancelRequest,
    ClientCreateRequest, ClientUpdateRequest, MarkPaidRequest, PaymentCreateRequest, RateCreateRequest,
    SessionCreateRequest, VoidPaymentRequest
)

router = APIRouter()

ERROR_STATUS_CODES = {
    "Unauthorized": 403,
    "ValidationFailed": 422,
    "NotFound": 404,
    "ConflictExists": 409,
    "InvalidStateTransition": 409,
    "CreditExhausted": 409,
    "NoRateConfigured": 422,
}

def get_engine(db: Session = Depends(get_db)) -> SchedulingEngine:
    return SchedulingEngine(db)

def get_current_actor(x_staff_id: Optional[int] = Header(default=None),
                      db: Session = Depends(get_db)) -> Actor:
    if x_staff_id is None:
        raise HTTPException(status_code=401, detail={"success": False, "message": "Missing X-Staff-Id header"})

    staff = db.query(StaffMember).filter(StaffMember.id == x_staff_id, StaffMember.is_active == True).first()
    if not staff:
        raise HTTPException(status_code=401, detail={"success": False, "message": "Unknown or inactive staff member"})
    return Actor(id=staff.id, role=staff.role, home_clinic_id=staff.home_clinic_id)

def respond(result: UseCaseResult, message: str) -> dict:
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.kind, 500),
            detail={
                "success": False,
                "message": result.error,
                "kind": result.kind,
                "field": result.field
            }
        )

    response = {"success": True, "message": message, **result.data}
    if result.warnings:
        response["warnings"] = result.warnings
        response["has_warnings"] = True
    return response

# Sessions

@router.post("/sessions")
def create_session(request: SessionCreateRequest, actor: Actor = Depends(get_current_actor),
                   engine: SchedulingEngine = Depends(get_engine)):
    result = engine.create_session(
        actor,
        clinic_id=request.clinic_id,
        therapist_id=request.therapist_id,
        scheduled_date=request.scheduled_date,
        scheduled_time=request.start_time,
        client_id=request.client_id,
        client_name=request.client_name,
        session_type=request.session_type,
        duration_minutes=request.duration_minutes,
        advance_payment_id=request.advance_payment_id
    )
    response = respond(result, "Session created successfully")
    redis_helper.invalidate_schedule_cache(request.scheduled_date)
    return response

@router.post("/sessions/bulk")
def create_multiple_sessions(request: BulkSessionCreateRequest, actor: Actor = Depends(get_current_actor),
                             engine: SchedulingEngine = Depends(get_engine)):
    result = engine.create_multiple_sessions(
        actor,
        clinic_id=request.clinic_id,
        therapist_id=request.therapist_id,
        dates=request.dates,
        scheduled_time=request.start_time,
        client_id=request.client_id,
        client_name=request.client_name,
        session_type=request.session_type,
        duration_minutes=request.duration_minutes
    )
    response = respond(result, f"{result.data.get('count', 0)} session(s) created")
    redis_helper.invalidate_schedule_cache()
    return response

@router.post("/sessions/{session_id}/start")
def start_session(session_id: int, actor: Actor = Depends(get_current_actor),
                  engine: SchedulingEngine = Depends(get_engine)):
    response = respond(engine.start_session(actor, session_id), "Session started")
    redis_helper.invalidate_schedule_cache(response["session"]["scheduled_date"])
    return response

@router.post("/sessions/{session_id}/confirm")
def confirm_session(session_id: int, actor: Actor = Depends(get_current_actor),
                    engine: SchedulingEngine = Depends(get_engine)):
    response = respond(engine.confirm_session(actor, session_id), "Session confirmed")
    redis_helper.invalidate_schedule_cache(response["session"]["scheduled_date"])
    return response

@router.post("/sessions/{session_id}/cancel")
def cancel_session(session_id: int, request: CancelRequest, actor: Actor = Depends(get_current_actor),
                   engine: SchedulingEngine = Depends(get_engine)):
    response = respond(engine.cancel_session(actor, session_id, request.reason), "Session cancelled")
    redis_helper.invalidate_schedule_cache(response["session"]["scheduled_date"])
    return response

@router.get("/sessions/day/{day}")
def get_day_schedule(day: date, clinic_id: Optional[int] = None, therapist_id: Optional[int] = None,
                     actor: Actor = Depends(get_current_actor), engine: SchedulingEngine = Depends(get_engine)):
    scope = respond(engine.schedule_scope(actor, clinic_id, therapist_id), "")
    cached_data = redis_helper.get_day_schedule(day, scope["clinic_id"], scope["therapist_id"])
    if cached_data:
        return cached_data

    response = respond(engine.day_schedule(actor, day, clinic_id, therapist_id), "Day schedule")
    redis_helper.cache_day_schedule(day, scope["clinic_id"], scope["therapist_id"], response)
    return response

@router.get("/sessions/pending-confirmations")
def get_pending_confirmations(clinic_id: Optional[int] = None, actor: Actor = Depends(get_current_actor),
                              engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.pending_confirmations(actor, clinic_id), "Sessions awaiting confirmation")

# Payments

@router.post("/payments")
def record_payment(request: PaymentCreateRequest, actor: Actor = Depends(get_current_actor),
                   engine: SchedulingEngine = Depends(get_engine)):
    result = engine.record_payment(
        actor,
        clinic_id=request.clinic_id,
        client_id=request.client_id,
        amount=request.amount,
        method=request.method,
        session_id=request.session_id,
        source=request.source,
        credit_type=request.credit_type,
        sessions_paid=request.sessions_paid,
        receipt_number=request.receipt_number,
        notes=request.notes
    )
    response = respond(result, "Payment recorded successfully")
    redis_helper.invalidate_income_cache()
    return response

@router.post("/payments/{payment_id}/link")
def link_advance_credit(payment_id: int, request: AdvanceLinkRequest, actor: Actor = Depends(get_current_actor),
                        engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.link_advance_credit(actor, payment_id, request.session_id), "Session linked to advance payment")

@router.post("/payments/{payment_id}/void")
def void_payment(payment_id: int, request: VoidPaymentRequest, actor: Actor = Depends(get_current_actor),
                 engine: SchedulingEngine = Depends(get_engine)):
    response = respond(engine.void_payment(actor, payment_id, request.reason), "Payment voided")
    redis_helper.invalidate_income_cache()
    return response

@router.get("/payments")
def list_payments(window: str = "day", day: Optional[date] = None, clinic_id: Optional[int] = None,
                  actor: Actor = Depends(get_current_actor), engine: SchedulingEngine = Depends(get_engine)):
    day = day or engine.clock.now().date()
    return respond(engine.list_payments(actor, window, day, clinic_id), "Payments")

@router.get("/clients/{client_id}/advance-credits")
def get_advance_credits(client_id: int, actor: Actor = Depends(get_current_actor),
                        engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.advance_credit_summary(actor, client_id), "Advance credits")

# Attendance

@router.post("/attendance")
def log_attendance(request: AttendanceLogRequest, actor: Actor = Depends(get_current_actor),
                   engine: SchedulingEngine = Depends(get_engine)):
    result = engine.log_attendance(
        actor,
        clinic_id=request.clinic_id,
        client_id=request.client_id,
        guardian_name=request.guardian_name,
        guardian_relation=request.guardian_relation,
        primary_therapist_id=request.primary_therapist_id,
        notes=request.notes
    )
    response = respond(result, "Attendance logged")
    redis_helper.invalidate_income_cache()
    return response

@router.post("/attendance/{log_id}/mark-paid")
def mark_attendance_paid(log_id: int, request: MarkPaidRequest, actor: Actor = Depends(get_current_actor),
                         engine: SchedulingEngine = Depends(get_engine)):
    result = engine.mark_attendance_paid(actor, log_id, request.method)
    message = "Attendance already paid" if result.data.get("already_paid") else "Attendance marked as paid"
    response = respond(result, message)
    redis_helper.invalidate_income_cache()
    return response

@router.get("/attendance")
def list_attendance(window: Optional[str] = "day", day: Optional[date] = None, clinic_id: Optional[int] = None,
                    actor: Actor = Depends(get_current_actor), engine: SchedulingEngine = Depends(get_engine)):
    day = day or engine.clock.now().date()
    return respond(engine.list_attendance(actor, day, window, clinic_id), "Attendance logs")

@router.get("/income/daily/{day}")
def get_daily_income(day: date, clinic_id: Optional[int] = None, actor: Actor = Depends(get_current_actor),
                     engine: SchedulingEngine = Depends(get_engine)):
    scope = respond(engine.income_scope(actor, clinic_id), "")
    cached_data = redis_helper.get_income_summary(day, scope["clinic_id"])
    if cached_data:
        return cached_data

    response = respond(engine.daily_income_summary(actor, day, clinic_id), "Daily income summary")
    redis_helper.cache_income_summary(day, scope["clinic_id"], response)
    return response

# Rates

@router.get("/rates/{clinic_id}/{therapist_role}")
def get_session_rate(clinic_id: int, therapist_role: StaffRole, actor: Actor = Depends(get_current_actor),
                     engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.get_session_rate(actor, clinic_id, therapist_role), "Current session rate")

@router.post("/rates")
def set_session_rate(request: RateCreateRequest, actor: Actor = Depends(get_current_actor),
                     engine: SchedulingEngine = Depends(get_engine)):
    result = engine.set_session_rate(
        actor, request.clinic_id, request.therapist_role, request.rate_amount, request.effective_from
    )
    response = respond(result, "Session rate updated")
    redis_helper.invalidate_income_cache()
    return response

# Clients

@router.post("/clients")
def create_client(request: ClientCreateRequest, actor: Actor = Depends(get_current_actor),
                  engine: SchedulingEngine = Depends(get_engine)):
    result = engine.create_client(
        actor,
        clinic_id=request.clinic_id,
        first_name=request.first_name,
        last_name=request.last_name,
        guardian_name=request.guardian_name,
        guardian_phone=request.guardian_phone,
        guardian_relation=request.guardian_relation,
        primary_therapist_id=request.primary_therapist_id,
        notes=request.notes
    )
    return respond(result, "Client created successfully")

@router.patch("/clients/{client_id}")
def update_client(client_id: int, request: ClientUpdateRequest, actor: Actor = Depends(get_current_actor),
                  engine: SchedulingEngine = Depends(get_engine)):
    result = engine.update_client(actor, client_id, request.model_dump(exclude_unset=True))
    response = respond(result, "Client updated successfully")
    # Expected income is priced by the client's primary therapist
    redis_helper.invalidate_income_cache()
    return response

@router.post("/clients/{client_id}/backup-therapists")
def add_backup_therapist(client_id: int, request: BackupTherapistRequest, actor: Actor = Depends(get_current_actor),
                         engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.add_backup_therapist(actor, client_id, request.therapist_id), "Backup therapist added")

@router.delete("/clients/{client_id}/backup-therapists/{therapist_id}")
def remove_backup_therapist(client_id: int, therapist_id: int, actor: Actor = Depends(get_current_actor),
                            engine: SchedulingEngine = Depends(get_engine)):
    return respond(engine.remove_backup_therapist(actor, client_id, therapist_id), "Backup therapist removed")
