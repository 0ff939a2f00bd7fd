from typing import List, Optional
from datetime import date, time, datetime
from decimal import Decimal
from pydantic import BaseModel, field_validator
import re

from clinic_engine.models.schema import ClientStatus, CreditType, PaymentMethod, PaymentSource, SessionType, StaffRole

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

def parse_session_time(value: str) -> time:
    if not TIME_PATTERN.match(value or ""):
        raise ValueError("Time must be in HH:MM format")
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))

class SessionCreateRequest(BaseModel):
    clinic_id: int
    therapist_id: int
    scheduled_date: date
    scheduled_time: str
    client_id: Optional[int] = None
    client_name: Optional[str] = None
    session_type: SessionType = SessionType.REGULAR
    duration_minutes: Optional[int] = None
    advance_payment_id: Optional[int] = None

    @field_validator('scheduled_time')
    def time_format(cls, v):
        parse_session_time(v)
        return v

    @property
    def start_time(self) -> time:
        return parse_session_time(self.scheduled_time)

class BulkSessionCreateRequest(BaseModel):
    clinic_id: int
    therapist_id: int
    dates: List[date]
    scheduled_time: str
    client_id: Optional[int] = None
    client_name: Optional[str] = None
    session_type: SessionType = SessionType.REGULAR
    duration_minutes: Optional[int] = None

    @field_validator('dates')
    def dates_not_empty(cls, v):
        if not v:
            raise ValueError('At least one date must be selected')
        return v

    @field_validator('scheduled_time')
    def time_format(cls, v):
        parse_session_time(v)
        return v

    @property
    def start_time(self) -> time:
        return parse_session_time(self.scheduled_time)

class CancelRequest(BaseModel):
    reason: str

    @field_validator('reason')
    def reason_not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('A cancellation reason is required')
        return v.strip()

class PaymentCreateRequest(BaseModel):
    clinic_id: int
    client_id: int
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    session_id: Optional[int] = None
    source: PaymentSource = PaymentSource.CLIENT
    credit_type: CreditType = CreditType.REGULAR
    sessions_paid: int = 1
    receipt_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('amount')
    def amount_not_negative(cls, v):
        if v < 0:
            raise ValueError('Amount cannot be negative')
        return v

class AdvanceLinkRequest(BaseModel):
    session_id: int

class VoidPaymentRequest(BaseModel):
    reason: Optional[str] = None

class AttendanceLogRequest(BaseModel):
    clinic_id: int
    client_id: int
    guardian_name: str
    guardian_relation: Optional[str] = None
    primary_therapist_id: Optional[int] = None
    notes: Optional[str] = None

    @field_validator('guardian_name')
    def guardian_required(cls, v):
        if not v or not v.strip():
            raise ValueError('Guardian name is required')
        return v.strip()

class MarkPaidRequest(BaseModel):
    # Kept as free text; unknown methods are recorded as cash
    method: Optional[str] = None

class RateCreateRequest(BaseModel):
    clinic_id: int
    therapist_role: StaffRole
    rate_amount: Decimal
    effective_from: Optional[datetime] = None

    @field_validator('rate_amount')
    def rate_positive(cls, v):
        if v <= 0:
            raise ValueError('Rate amount must be positive')
        return v

class ClientCreateRequest(BaseModel):
    clinic_id: int
    first_name: str
    last_name: str
    guardian_name: str
    guardian_phone: Optional[str] = None
    guardian_relation: Optional[str] = None
    primary_therapist_id: Optional[int] = None
    notes: Optional[str] = None

    @field_validator('first_name', 'last_name', 'guardian_name')
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('Field cannot be empty')
        return v.strip()

class BackupTherapistRequest(BaseModel):
    therapist_id: int

class ClientUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_phone: Optional[str] = None
    guardian_relation: Optional[str] = None
    main_clinic_id: Optional[int] = None
    primary_therapist_id: Optional[int] = None
    status: Optional[ClientStatus] = None
    notes: Optional[str] = None

    @field_validator('first_name', 'last_name', 'guardian_name')
    def not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Field cannot be empty')
        return v.strip() if v is not None else v
