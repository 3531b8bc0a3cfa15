from typing import Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and the failure envelope."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[list[str]] = None):
        self.message = message or self.default_message
        self.errors = errors or [self.message]
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 422
    default_message = "The given data was invalid."


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication failed"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class PaymentRequiredError(AppError):
    status_code = 402
    default_message = "Payment failed"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class BadRequestError(AppError):
    status_code = 400
    default_message = "Bad request"


class ExpiredError(BadRequestError):
    default_message = "OTP has expired"


class InternalError(AppError):
    pass
