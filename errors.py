from fastapi import status


class AppError(Exception):
    """Base error carrying an HTTP status and a stable machine-readable code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    default_message = "Access token is required"


class TokenExpired(Unauthorized):
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenInvalid(Unauthorized):
    code = "TOKEN_INVALID"
    default_message = "Invalid token"


class InvalidCredentials(Unauthorized):
    code = "INVALID_CREDENTIALS"
    default_message = "Incorrect email or password"


class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Not found"


class EmailExists(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "EMAIL_EXISTS"
    default_message = "Email already registered"


class InsufficientCredits(AppError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "INSUFFICIENT_CREDITS"
    default_message = "Insufficient credits. Please upgrade your plan."


class UpstreamUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "UPSTREAM_UNAVAILABLE"
    default_message = "Analysis service is temporarily unavailable. Please try again."


class PersistenceError(AppError):
    code = "PERSISTENCE_ERROR"
    default_message = "Could not save the analysis. Please try again."


class InternalError(AppError):
    pass
