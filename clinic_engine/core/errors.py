"""Error kinds raised by the scheduling and payment components.

Components raise these; the engine facade converts them into a failed
``UseCaseResult`` so nothing crosses the orchestration boundary as an
exception.
"""

from typing import Optional


class SchedulingError(Exception):
    kind = "SchedulingError"

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(self.message)


class Unauthorized(SchedulingError):
    kind = "Unauthorized"


class ValidationFailed(SchedulingError):
    kind = "ValidationFailed"


class NotFound(SchedulingError):
    kind = "NotFound"


class ConflictExists(SchedulingError):
    kind = "ConflictExists"


class InvalidStateTransition(SchedulingError):
    kind = "InvalidStateTransition"


class CreditExhausted(SchedulingError):
    kind = "CreditExhausted"


class NoRateConfigured(SchedulingError):
    kind = "NoRateConfigured"
