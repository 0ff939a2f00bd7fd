from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, ForeignKey, Date, Time, Boolean, DateTime, Enum, Numeric, Text, JSON,
    Index, UniqueConstraint, CheckConstraint, text
)
from sqlalchemy.orm import relationship, declarative_base
import enum

Base = declarative_base()

def _enum_column(enum_cls, **kwargs):
    # Stores enum values ("in_progress"), not member names; the partial index predicates rely on it
    return Column(
        Enum(enum_cls, values_callable=lambda members: [m.value for m in members], native_enum=False, length=32),
        **kwargs
    )

class StaffRole(enum.Enum):
    OWNER = "owner"
    SECRETARY = "secretary"
    LICENSED_THERAPIST = "licensed_therapist"
    UNLICENSED_THERAPIST = "unlicensed_therapist"
    SPEECH_THERAPIST = "speech_therapist"

class ClientStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCHARGED = "discharged"

class SessionType(enum.Enum):
    REGULAR = "regular"
    EVALUATION = "evaluation"
    MAKE_UP = "make_up"

class SessionStatus(enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

BLOCKING_STATUSES = (SessionStatus.SCHEDULED, SessionStatus.COMPLETED)

class PaymentMethod(enum.Enum):
    CASH = "cash"
    ELECTRONIC = "electronic"
    BANK_TRANSFER = "bank_transfer"
    NONE = "none"

class PaymentSource(enum.Enum):
    CLIENT = "client"
    GOVERNMENT_PROGRAM_A = "government_program_a"
    GOVERNMENT_PROGRAM_B = "government_program_b"
    OTHER_GOVERNMENT = "other_government"

class CreditType(enum.Enum):
    REGULAR = "regular"
    ADVANCE = "advance"
    NO_PAYMENT = "no_payment"

class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    VOIDED = "voided"

class AttendancePaymentStatus(enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"

class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class StaffMember(Base):
    __tablename__ = "staff_members"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    role = _enum_column(StaffRole, nullable=False, index=True)
    home_clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    home_clinic = relationship("Clinic")

class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, index=True)
    guardian_name = Column(String, nullable=False)
    guardian_phone = Column(String)
    guardian_relation = Column(String)
    main_clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    primary_therapist_id = Column(Integer, ForeignKey("staff_members.id"), nullable=True, index=True)
    status = _enum_column(ClientStatus, nullable=False, default=ClientStatus.ACTIVE, index=True)
    discharge_date = Column(DateTime)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    main_clinic = relationship("Clinic")
    primary_therapist = relationship("StaffMember")
    backup_therapists = relationship(
        "BackupTherapist", back_populates="client", order_by="BackupTherapist.priority",
        cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

class BackupTherapist(Base):
    __tablename__ = "backup_therapists"
    __table_args__ = (
        UniqueConstraint("client_id", "therapist_id", name="uq_backup_client_therapist"),
        UniqueConstraint("client_id", "priority", name="uq_backup_client_priority"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False)

    client = relationship("Client", back_populates="backup_therapists")
    therapist = relationship("StaffMember")

class Session(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "(client_id IS NOT NULL AND client_name IS NULL) OR (client_id IS NULL AND client_name IS NOT NULL)",
            name="ck_session_single_client_reference"
        ),
        Index(
            "uq_session_therapist_slot_active",
            "therapist_id", "scheduled_date", "scheduled_time",
            unique=True,
            sqlite_where=text("status IN ('scheduled', 'completed')"),
            postgresql_where=text("status IN ('scheduled', 'completed')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True, index=True)
    client_name = Column(String, nullable=True)
    therapist_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False, index=True)
    session_type = _enum_column(SessionType, nullable=False, default=SessionType.REGULAR)
    scheduled_date = Column(Date, nullable=False, index=True)
    scheduled_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    status = _enum_column(SessionStatus, nullable=False, default=SessionStatus.SCHEDULED, index=True)

    started_at = Column(DateTime)
    started_by_id = Column(Integer, ForeignKey("staff_members.id"))
    verified_at = Column(DateTime)
    verified_by_id = Column(Integer, ForeignKey("staff_members.id"))
    cancelled_at = Column(DateTime)
    cancelled_by_id = Column(Integer, ForeignKey("staff_members.id"))
    cancellation_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    clinic = relationship("Clinic")
    client = relationship("Client")
    therapist = relationship("StaffMember", foreign_keys=[therapist_id])
    payment_links = relationship("PaymentSession", back_populates="session")

    @property
    def display_client_name(self) -> str:
        return self.client.full_name if self.client else self.client_name

class SessionRate(Base):
    __tablename__ = "session_rates"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    therapist_role = _enum_column(StaffRole, nullable=False, index=True)
    rate_amount = Column(Numeric(10, 2), nullable=False)
    effective_from = Column(DateTime, nullable=False, index=True)
    effective_to = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("sessions_paid >= 1", name="ck_payment_sessions_paid_positive"),
        CheckConstraint("sessions_used <= sessions_paid", name="ck_payment_credit_not_overspent"),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    method = _enum_column(PaymentMethod, nullable=False)
    source = _enum_column(PaymentSource, nullable=False, default=PaymentSource.CLIENT)
    credit_type = _enum_column(CreditType, nullable=False, default=CreditType.REGULAR, index=True)
    sessions_paid = Column(Integer, nullable=False, default=1)
    sessions_used = Column(Integer, nullable=False, default=0)
    receipt_number = Column(String, unique=True, nullable=True)
    recorded_by_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    payment_date = Column(DateTime, nullable=False, index=True)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.COMPLETED, index=True)
    voided_at = Column(DateTime)
    voided_by_id = Column(Integer, ForeignKey("staff_members.id"))
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client")
    links = relationship("PaymentSession", back_populates="payment")

class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    payment = relationship("Payment", back_populates="links")
    session = relationship("Session", back_populates="payment_links")

class AttendanceLog(Base):
    __tablename__ = "attendance_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    guardian_name = Column(String, nullable=False)
    guardian_relation = Column(String)
    primary_therapist_id = Column(Integer, ForeignKey("staff_members.id"), nullable=True)
    logged_by_id = Column(Integer, ForeignKey("staff_members.id"), nullable=False)
    logged_at = Column(DateTime, nullable=False, index=True)
    notes = Column(Text)
    payment_status = _enum_column(
        AttendancePaymentStatus, nullable=False, default=AttendancePaymentStatus.UNPAID, index=True
    )
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    client = relationship("Client")
    primary_therapist = relationship("StaffMember", foreign_keys=[primary_therapist_id])
    payment = relationship("Payment")

class AuditEntry(Base):
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, ForeignKey("staff_members.id"), nullable=True, index=True)
    actor_role = Column(String)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=False, index=True)
    before = Column(JSON)
    after = Column(JSON)
    description = Column(Text)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
