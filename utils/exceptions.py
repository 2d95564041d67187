from typing import Optional


class OtpBackendError(Exception):
    """
    Base class for every error the core reports to its callers.

    Each subclass carries a stable ``kind`` string so that outer layers
    (webhooks, an HTTP API) can map failures without matching on messages.
    """
    kind = "error"
    default_message = "Unexpected error"
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class InvalidAmount(OtpBackendError):
    kind = "invalid_amount"
    default_message = "Amount must be a positive number"


class InsufficientCredits(OtpBackendError):
    kind = "insufficient_credits"
    default_message = "Insufficient credits"


class InvalidState(OtpBackendError):
    kind = "invalid_state"
    default_message = "Operation not allowed in the current state"


class NotFound(OtpBackendError):
    kind = "not_found"
    default_message = "Resource not found"


class ConcurrencyConflict(OtpBackendError):
    kind = "concurrency_conflict"
    default_message = "The resource was modified concurrently, re-fetch and retry"
    retryable = True


class RateLimited(OtpBackendError):
    kind = "rate_limited"
    default_message = "Too many requests"
    retryable = True


class RentalPersistenceError(OtpBackendError):
    kind = "persistence_failed"
    default_message = "The number was granted but the rental could not be saved"


class ProviderError(OtpBackendError):
    kind = "provider_error"


class ProviderUnavailable(ProviderError):
    kind = "provider_unavailable"
    default_message = "The number provider is temporarily unavailable"
    retryable = True


class ProviderRejected(ProviderError):
    """The provider refused the request. ``reason`` is the provider's own code."""
    kind = "provider_rejected"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Provider rejected the request: {reason}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason
        return data
