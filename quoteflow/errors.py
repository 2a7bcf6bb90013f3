"""
Domain errors raised by the quotation services.

Every error carries the HTTP status the API layer answers with and whether
the caller may simply re-read and retry.
"""


class QuotationError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        payload = {
            "error": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(QuotationError):
    status_code = 400


class DiscountExceedsSubtotal(QuotationError):
    status_code = 422


class NotFound(QuotationError):
    status_code = 404


class InvalidStateTransition(QuotationError):
    status_code = 409


class InvalidStateForEdit(InvalidStateTransition):
    pass


class InvalidStepState(QuotationError):
    status_code = 409


class ConcurrentModification(QuotationError):
    status_code = 409
    retryable = True


class StaleChain(QuotationError):
    status_code = 409
    retryable = True


class StaleRevision(QuotationError):
    status_code = 409
    retryable = True


class Unauthorized(QuotationError):
    status_code = 403


class QuotationArchived(QuotationError):
    status_code = 409
