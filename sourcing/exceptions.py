"""Domain error taxonomy.

Services raise these; ``sourcing.main`` maps them to the
``{"error": {"code", "message"}}`` envelope used by every endpoint.
"""

from typing import Optional


class SourcingError(Exception):
    status_code = 400
    default_code = "SOURCING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_detail(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(SourcingError):
    """Malformed input, rejected before any mutation."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(SourcingError):
    status_code = 404
    default_code = "NOT_FOUND"


class StateError(SourcingError):
    """Operation attempted in the wrong solicitation or line item status."""

    status_code = 409
    default_code = "INVALID_STATE"


class ConsistencyError(SourcingError):
    """Quote/award repair could not reach a consistent state; the unit of work must abort."""

    status_code = 500
    default_code = "CONSISTENCY_ERROR"
