"""Exceptions raised by the storefront services."""

from typing import Dict, Optional


class StorefrontError(Exception):
    """Base exception for storefront services."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a video, user or config record does not exist."""

    status_code = 404

    def __init__(self, kind: str, record_id: Optional[str] = None):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found")


class UpstreamUnavailableError(StorefrontError):
    """Raised when the document or file store cannot be reached."""

    status_code = 503


class FieldValidationError(StorefrontError):
    """Raised before any I/O when a mutation is missing required fields."""

    status_code = 422

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{field}: {msg}" for field, msg in errors.items()))


class PaymentProcessorError(StorefrontError):
    """Raised when a card or PayPal call fails. The message is shown to the user as-is."""

    status_code = 502

    def __init__(self, message: str, processor: Optional[str] = None):
        self.processor = processor
        super().__init__(message)


class PaymentPathUnavailableError(StorefrontError):
    status_code = 409


class InvalidTransitionError(StorefrontError):
    status_code = 409


class WalletError(StorefrontError):
    status_code = 400
