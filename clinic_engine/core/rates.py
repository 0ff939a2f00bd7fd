from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from clinic_engine.core.errors import ValidationFailed
from clinic_engine.models.schema import SessionRate, StaffRole

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

class RateResolver:
    """Looks up the per-session rate in effect for a clinic and therapist role."""

    def __init__(self, db: Session):
        self.db = db

    def current_rate_row(self, clinic_id: int, role: StaffRole, as_of: datetime) -> Optional[SessionRate]:
        return (
            self.db.query(SessionRate)
            .filter(
                SessionRate.clinic_id == clinic_id,
                SessionRate.therapist_role == role,
                SessionRate.effective_from <= as_of,
                or_(SessionRate.effective_to.is_(None), SessionRate.effective_to >= as_of)
            )
            # Latest start wins; insertion order settles equal starts
            .order_by(SessionRate.effective_from.desc(), SessionRate.id.desc())
            .first()
        )

    def resolve_rate(self, clinic_id: int, role: Optional[StaffRole], as_of: datetime) -> Decimal:
        if role is None:
            return ZERO
        row = self.current_rate_row(clinic_id, role, as_of)
        return Decimal(row.rate_amount) if row else ZERO

    def set_rate(self, clinic_id: int, role: StaffRole, amount: Decimal, effective_from: datetime) -> SessionRate:
        """Publish a new rate version, closing any open-ended version that started earlier"""
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationFailed("Rate amount must be positive", field="amount")

        closed = (
            self.db.query(SessionRate)
            .filter(
                SessionRate.clinic_id == clinic_id,
                SessionRate.therapist_role == role,
                SessionRate.effective_to.is_(None),
                SessionRate.effective_from < effective_from
            )
            .update({SessionRate.effective_to: effective_from}, synchronize_session=False)
        )

        rate = SessionRate(
            clinic_id=clinic_id,
            therapist_role=role,
            rate_amount=amount,
            effective_from=effective_from
        )
        self.db.add(rate)
        self.db.flush()

        logger.info(f"Rate for clinic {clinic_id}/{role.value} set to {amount} from {effective_from} "
                    f"({closed} previous version(s) closed)")
        return rate

class CachedRateLookup:
    """Per-call memo of resolved rates keyed by (clinic, role)."""

    def __init__(self, resolver: RateResolver, as_of: datetime):
        self.resolver = resolver
        self.as_of = as_of
        self._cache: Dict[Tuple[int, Optional[StaffRole]], Decimal] = {}

    def rate_for(self, clinic_id: int, role: Optional[StaffRole]) -> Decimal:
        key = (clinic_id, role)
        if key not in self._cache:
            self._cache[key] = self.resolver.resolve_rate(clinic_id, role, self.as_of)
        return self._cache[key]
