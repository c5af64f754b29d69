from typing import Optional


class ReconcilerError(Exception):
    """Base class for errors raised by the reconciliation service."""


class TransientError(ReconcilerError):
    """The operation may succeed if the event is delivered again later."""


class ProviderApiError(ReconcilerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SignatureVerificationError(ReconcilerError):
    pass


class OrderIdentityError(ReconcilerError):
    """Raised when code tries to re-link an order to a different provider order."""
