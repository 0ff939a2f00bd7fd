from typing import Any, Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinic_engine.core.context import Actor, Clock
from clinic_engine.core.errors import ConflictExists, NotFound, Unauthorized, ValidationFailed
from clinic_engine.core.permissions import Permission, can_access_clinic, has_permission, is_therapist
from clinic_engine.models.schema import BackupTherapist, Client, ClientStatus, Clinic, StaffMember

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "first_name", "last_name", "guardian_name", "guardian_phone", "guardian_relation",
    "main_clinic_id", "primary_therapist_id", "status", "notes",
}
REQUIRED_TEXT_FIELDS = ("first_name", "last_name", "guardian_name")

class ClientRegistry:
    def __init__(self, db: Session, clock: Clock):
        self.db = db
        self.clock = clock

    def _authorize(self, actor: Actor, clinic_id: int):
        if not has_permission(actor.role, Permission.MANAGE_CLIENTS):
            raise Unauthorized("Unauthorized")
        if not can_access_clinic(actor.role, actor.home_clinic_id, clinic_id):
            raise Unauthorized("You can only manage clients of your assigned clinic")

    def _therapist(self, therapist_id: int, field: str) -> StaffMember:
        therapist = self.db.query(StaffMember).filter(StaffMember.id == therapist_id).first()
        if not therapist or not therapist.is_active or not is_therapist(therapist.role):
            raise ValidationFailed("Therapist not found or not an active therapist", field=field)
        return therapist

    def _load_client(self, client_id: int) -> Client:
        client = self.db.query(Client).filter(Client.id == client_id).first()
        if not client:
            raise NotFound("Client not found", field="client_id")
        return client

    def create_client(self, actor: Actor, clinic_id: int, first_name: str, last_name: str,
                      guardian_name: str, guardian_phone: Optional[str] = None,
                      guardian_relation: Optional[str] = None, primary_therapist_id: Optional[int] = None,
                      notes: Optional[str] = None) -> Client:
        self._authorize(actor, clinic_id)

        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        guardian_name = (guardian_name or "").strip()
        if not first_name or not last_name:
            raise ValidationFailed("Client first and last name are required", field="first_name")
        if not guardian_name:
            raise ValidationFailed("Guardian name is required", field="guardian_name")
        if primary_therapist_id is not None:
            self._therapist(primary_therapist_id, "primary_therapist_id")

        client = Client(
            first_name=first_name,
            last_name=last_name,
            guardian_name=guardian_name,
            guardian_phone=guardian_phone,
            guardian_relation=guardian_relation,
            main_clinic_id=clinic_id,
            primary_therapist_id=primary_therapist_id,
            status=ClientStatus.ACTIVE,
            notes=notes
        )
        self.db.add(client)
        self.db.flush()
        logger.info(f"Client {client.id} registered at clinic {clinic_id}")
        return client

    def update_client(self, actor: Actor, client_id: int, changes: Dict[str, Any]) -> Client:
        """Apply a partial update. Only keys present in ``changes`` are touched;
        an explicit ``primary_therapist_id=None`` unassigns the primary therapist.

        Discharging stamps ``discharge_date``; moving a discharged client back
        to active or inactive clears it.
        """
        client = self._load_client(client_id)
        self._authorize(actor, client.main_clinic_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown client field: {sorted(unknown)[0]}", field=sorted(unknown)[0])

        for name in REQUIRED_TEXT_FIELDS:
            if name in changes:
                value = (changes[name] or "").strip()
                if not value:
                    raise ValidationFailed("Field cannot be empty", field=name)
                setattr(client, name, value)

        for name in ("guardian_phone", "guardian_relation", "notes"):
            if name in changes:
                setattr(client, name, changes[name] or None)

        if changes.get("main_clinic_id") is not None and changes["main_clinic_id"] != client.main_clinic_id:
            clinic_id = changes["main_clinic_id"]
            if not self.db.query(Clinic.id).filter(Clinic.id == clinic_id).first():
                raise ValidationFailed("Clinic not found", field="main_clinic_id")
            self._authorize(actor, clinic_id)
            client.main_clinic_id = clinic_id

        if "primary_therapist_id" in changes:
            therapist_id = changes["primary_therapist_id"]
            if therapist_id is not None and therapist_id != client.primary_therapist_id:
                self._therapist(therapist_id, "primary_therapist_id")
                is_backup = (
                    self.db.query(BackupTherapist.id)
                    .filter(BackupTherapist.client_id == client.id, BackupTherapist.therapist_id == therapist_id)
                    .first()
                )
                if is_backup:
                    raise ValidationFailed("Remove the therapist from the backup list before making them primary",
                                           field="primary_therapist_id")
            client.primary_therapist_id = therapist_id

        if changes.get("status") is not None:
            try:
                status = ClientStatus(changes["status"])
            except ValueError as exc:
                raise ValidationFailed("Status must be active, inactive or discharged", field="status") from exc
            if status == ClientStatus.DISCHARGED and client.status != ClientStatus.DISCHARGED:
                client.discharge_date = self.clock.now()
            elif status != ClientStatus.DISCHARGED:
                client.discharge_date = None
            client.status = status

        self.db.flush()
        logger.info(f"Client {client.id} updated by staff {actor.id}: {', '.join(sorted(changes)) or 'no changes'}")
        return client

    def add_backup_therapist(self, actor: Actor, client_id: int, therapist_id: int) -> BackupTherapist:
        """Append a therapist to the end of the client's backup list"""
        client = self._load_client(client_id)
        self._authorize(actor, client.main_clinic_id)
        self._therapist(therapist_id, "therapist_id")

        if client.primary_therapist_id == therapist_id:
            raise ValidationFailed("The primary therapist cannot also be a backup", field="therapist_id")

        existing = (
            self.db.query(BackupTherapist.id)
            .filter(BackupTherapist.client_id == client_id, BackupTherapist.therapist_id == therapist_id)
            .first()
        )
        if existing:
            raise ConflictExists("Therapist is already a backup for this client", field="therapist_id")

        max_priority = (
            self.db.query(func.coalesce(func.max(BackupTherapist.priority), 0))
            .filter(BackupTherapist.client_id == client_id)
            .scalar()
        )
        backup = BackupTherapist(client_id=client_id, therapist_id=therapist_id, priority=max_priority + 1)
        self.db.add(backup)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConflictExists("Backup therapist list changed concurrently", field="therapist_id") from exc
        return backup

    def remove_backup_therapist(self, actor: Actor, client_id: int, therapist_id: int):
        client = self._load_client(client_id)
        self._authorize(actor, client.main_clinic_id)

        backup = (
            self.db.query(BackupTherapist)
            .filter(BackupTherapist.client_id == client_id, BackupTherapist.therapist_id == therapist_id)
            .first()
        )
        if not backup:
            raise NotFound("Therapist is not a backup for this client", field="therapist_id")

        self.db.delete(backup)
        self.db.flush()

        # Renumber 1..n; two passes keep the (client, priority) constraint satisfied
        remaining = (
            self.db.query(BackupTherapist)
            .filter(BackupTherapist.client_id == client_id)
            .order_by(BackupTherapist.priority)
            .all()
        )
        for entry in remaining:
            entry.priority = -entry.priority
        self.db.flush()
        for position, entry in enumerate(remaining, start=1):
            entry.priority = position
        self.db.flush()
        self.db.expire(client, ["backup_therapists"])
        return remaining
