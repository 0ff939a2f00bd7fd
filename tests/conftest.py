import os

os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_engine.core.config import Settings
from clinic_engine.core.context import Actor
from clinic_engine.core.scheduling_engine import SchedulingEngine
from clinic_engine.models.schema import (
    Base, Client, ClientStatus, Clinic, SessionRate, StaffMember, StaffRole
)

NOW = datetime(2025, 3, 10, 10, 0)

class FixedClock:
    def __init__(self, current: datetime = NOW):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)

class RecordingAuditSink:
    def __init__(self):
        self.entries = []

    def record(self, actor, action, entity_type, entity_id, before=None, after=None,
               description="", clinic_id=None):
        self.entries.append({
            "actor_id": actor.id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "before": before,
            "after": after,
            "clinic_id": clinic_id,
        })

    def actions(self):
        return [entry["action"] for entry in self.entries]

def actor_for(staff: StaffMember) -> Actor:
    return Actor(id=staff.id, role=staff.role, home_clinic_id=staff.home_clinic_id)

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()

@pytest.fixture
def db(db_engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSession()
    yield session
    session.close()

@pytest.fixture
def clock():
    return FixedClock()

@pytest.fixture
def audit_sink():
    return RecordingAuditSink()

@pytest.fixture
def seed(db):
    """Two clinics, one staff member per role, a few clients and the licensed-therapist rate"""
    north = Clinic(name="North Clinic", code="NORTH")
    south = Clinic(name="South Clinic", code="SOUTH")
    db.add_all([north, south])
    db.flush()

    staff = {
        "owner": StaffMember(name="Olive Owner", role=StaffRole.OWNER, home_clinic_id=None),
        "secretary": StaffMember(name="Sam Secretary", role=StaffRole.SECRETARY, home_clinic_id=north.id),
        "south_secretary": StaffMember(name="Sid Secretary", role=StaffRole.SECRETARY, home_clinic_id=south.id),
        "licensed": StaffMember(name="Lee Licensed", role=StaffRole.LICENSED_THERAPIST, home_clinic_id=north.id),
        "speech": StaffMember(name="Sky Speech", role=StaffRole.SPEECH_THERAPIST, home_clinic_id=north.id),
        "unlicensed": StaffMember(name="Una Unlicensed", role=StaffRole.UNLICENSED_THERAPIST,
                                  home_clinic_id=north.id),
    }
    db.add_all(staff.values())
    db.flush()

    clients = {
        "client": Client(first_name="Ada", last_name="Child", guardian_name="Grace Child",
                         guardian_relation="mother", main_clinic_id=north.id,
                         primary_therapist_id=staff["licensed"].id),
        "speech_client": Client(first_name="Ben", last_name="Talker", guardian_name="Tom Talker",
                                main_clinic_id=north.id, primary_therapist_id=staff["speech"].id),
        "discharged": Client(first_name="Cal", last_name="Done", guardian_name="Dee Done",
                             main_clinic_id=north.id, status=ClientStatus.DISCHARGED),
        "south_client": Client(first_name="Dot", last_name="South", guardian_name="Sue South",
                               main_clinic_id=south.id, primary_therapist_id=staff["licensed"].id),
    }
    db.add_all(clients.values())
    db.add(SessionRate(
        clinic_id=north.id,
        therapist_role=StaffRole.LICENSED_THERAPIST,
        rate_amount=Decimal("700.00"),
        effective_from=datetime(2024, 1, 1)
    ))
    db.commit()

    return {"north": north, "south": south, "clients": clients, **staff}

@pytest.fixture
def engine(db, clock, audit_sink):
    return SchedulingEngine(db, clock=clock, audit_sink=audit_sink, settings=Settings())

@pytest.fixture
def book(engine, seed):
    """Book a session at the north clinic for the seeded client; returns the session dict"""
    def _book(session_date: date = NOW.date(), session_time: time = time(9, 0), therapist=None, client=None,
              actor=None):
        therapist = therapist or seed["licensed"]
        client = client or seed["clients"]["client"]
        result = engine.create_session(
            actor_for(actor or seed["secretary"]),
            clinic_id=seed["north"].id,
            therapist_id=therapist.id,
            scheduled_date=session_date,
            scheduled_time=session_time,
            client_id=client.id
        )
        assert result.success, result.error
        return result.data["session"]
    return _book
