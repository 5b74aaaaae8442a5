from typing import Any


class EngineError(Exception):
    """Precondition failures raised by engine operations (not routine scan outcomes)."""

    code = "ENGINE_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


class NotFound(EngineError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(EngineError):
    code = "FORBIDDEN"
    status_code = 403


class InvalidState(EngineError):
    code = "INVALID_STATE"
    status_code = 409


class SessionEnded(InvalidState):
    code = "SESSION_ENDED"


class InsufficientStudents(EngineError):
    code = "INSUFFICIENT_STUDENTS"
    status_code = 409

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Insufficient eligible students: requested {requested}, available {available}",
            details={"requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available
