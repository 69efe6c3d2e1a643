"""Domain Errors"""


class BookingError(Exception):
    """Base class for every failure the core reports to its callers"""

    status_code = 500
    code = "internal"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(BookingError):
    status_code = 400
    code = "validation_error"


class InvalidPricingInput(ValidationError):
    code = "invalid_pricing_input"


class NotFound(BookingError):
    status_code = 404
    code = "not_found"


class ResourceNotFound(NotFound):
    code = "resource_not_found"


class Conflict(BookingError):
    status_code = 409
    code = "conflict"


class InvalidStatusTransition(BookingError):
    status_code = 400
    code = "invalid_status_transition"


class AlreadyProcessed(InvalidStatusTransition):
    code = "already_processed"


class Unauthorized(BookingError):
    status_code = 401
    code = "unauthorized"


class Forbidden(BookingError):
    status_code = 403
    code = "forbidden"


class ExternalSignalRejected(BookingError):
    status_code = 401
    code = "external_signal_rejected"


class Internal(BookingError):
    status_code = 500
    code = "internal"
