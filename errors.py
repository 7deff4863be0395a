from typing import Optional


class AppError(ValueError):
    """Domain failure carrying the HTTP status and a stable machine code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[list[dict[str, str]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidPeriod(ValidationError):
    code = "INVALID_PERIOD"


class AuthError(AppError):
    status_code = 401
    code = "INVALID_TOKEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class DependencyUnavailable(AppError):
    # Raised by the AI advisor; recommendation paths degrade instead of failing.
    status_code = 503
    code = "AI_SERVICE_UNAVAILABLE"
