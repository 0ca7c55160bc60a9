"""Error taxonomy shared by the payment core and its HTTP boundary.

Every error carries the HTTP status it maps to and a short machine-readable
code; the API turns them into `{"error": code, "message": ...}` bodies.
"""


class PaymentError(Exception):
    """Base class for all payment-core failures."""

    status_code = 500
    code = "payment_error"


class ValidationError(PaymentError):
    """Malformed input (amounts, currencies, callback payloads)."""

    status_code = 422
    code = "validation_error"


class NotFoundError(PaymentError):
    status_code = 404
    code = "not_found"


class ConflictError(PaymentError):
    """State-machine violation, e.g. acting on a paid intent."""

    status_code = 409
    code = "conflict"


class UnsupportedProviderError(PaymentError):
    """No provider is registered under the requested name."""

    status_code = 400
    code = "unsupported_provider"


class NotSupportedError(PaymentError):
    """The provider exists but does not implement the requested operation."""

    status_code = 400
    code = "not_supported"


class ProviderNotConfiguredError(PaymentError):
    status_code = 503
    code = "provider_not_configured"


class SignatureError(PaymentError):
    """Webhook authenticity check failed."""

    status_code = 401
    code = "invalid_signature"


class ExternalProviderError(PaymentError):
    """The payment provider's API failed, timed out or returned garbage.

    `retryable` is true for timeouts, transport failures and 5xx answers;
    `upstream_status` is the provider's HTTP status when there was one.
    """

    status_code = 502
    code = "external_provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        retryable: bool = False,
        upstream_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.upstream_status = upstream_status
