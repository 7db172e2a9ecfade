"""
Domain error taxonomy for the orchestration engine.

Every error surfaced to a caller carries a stable code, a human message,
a sanitized detail bag and the correlation id of the originating call.
"""
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from payment_orchestrator.core.sanitize import sanitize_mapping


class PaymentErrorCode(str, Enum):
    """Stable error codes exposed in error envelopes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    AUTH_FAILED = "AUTH_FAILED"
    BAD_REQUEST = "BAD_REQUEST"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    AMOUNT_IMMUTABLE = "AMOUNT_IMMUTABLE"
    CURRENCY_NOT_SUPPORTED = "CURRENCY_NOT_SUPPORTED"
    CANNOT_CANCEL_PAID_PAYMENT = "CANNOT_CANCEL_PAID_PAYMENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    PAYMENT_WEBHOOK_FAILED = "PAYMENT_WEBHOOK_FAILED"


class PaymentProviderError(Exception):
    """Base exception for all payment orchestration errors."""

    default_code = PaymentErrorCode.INTERNAL_ERROR
    default_http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        """
        Initialize payment error.

        Args:
            message: Human readable message
            code: Stable error code (defaults per subclass)
            http_status: HTTP status to surface (defaults per subclass)
            details: Diagnostic detail bag, sanitized on construction
            correlation_id: Correlation id of the originating call
        """
        super().__init__(message)
        self.message = message
        self.code = str(code.value if isinstance(code, Enum) else code or self.default_code.value)
        self.http_status = http_status or self.default_http_status
        self.details = sanitize_mapping(details or {})
        self.correlation_id = correlation_id

    def with_correlation_id(self, correlation_id: Optional[str]) -> "PaymentProviderError":
        """Bind a correlation id if the error does not carry one yet."""
        if self.correlation_id is None:
            self.correlation_id = correlation_id
        return self

    def to_envelope(self) -> Dict[str, Any]:
        """Render the error envelope returned to callers."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "correlation_id": self.correlation_id,
            }
        }

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(code={self.code}, status={self.http_status}, "
            f"correlation_id={self.correlation_id})>"
        )


class PaymentValidationError(PaymentProviderError):
    """Raised for bad or missing input and unmapped events."""

    default_code = PaymentErrorCode.VALIDATION_ERROR
    default_http_status = 400


class SignatureInvalidError(PaymentProviderError):
    """Raised when webhook or checkout signature verification fails."""

    default_code = PaymentErrorCode.SIGNATURE_INVALID
    default_http_status = 401


class ProviderUnavailableError(PaymentProviderError):
    """Raised for misconfiguration, disabled payments or unresolvable providers."""

    default_code = PaymentErrorCode.PROVIDER_UNAVAILABLE
    default_http_status = 503


class RateLimitedError(PaymentProviderError):
    """Raised when the upstream provider rate limits a call."""

    default_code = PaymentErrorCode.RATE_LIMITED
    default_http_status = 429


class UpstreamError(PaymentProviderError):
    """Raised for upstream failures not otherwise classified."""

    default_code = PaymentErrorCode.UPSTREAM_ERROR
    default_http_status = 502


class StateTransitionError(PaymentProviderError):
    """Raised for an illegal canonical transition in strict mode."""

    default_code = PaymentErrorCode.STATE_TRANSITION_INVALID
    default_http_status = 409


class NotSupportedError(PaymentProviderError):
    """Raised when a provider lacks the requested capability."""

    default_code = PaymentErrorCode.NOT_SUPPORTED
    default_http_status = 400


class AmountImmutableError(PaymentProviderError):
    """Raised when amount or currency changes after an upstream order exists."""

    default_code = PaymentErrorCode.AMOUNT_IMMUTABLE
    default_http_status = 409


def to_error_envelope(
    exc: BaseException,
    correlation_id: Optional[str],
    fallback_code: str = PaymentErrorCode.INTERNAL_ERROR.value,
    fallback_message: str = "Payment processing failed",
    fallback_status: int = 500,
) -> Tuple[int, Dict[str, Any]]:
    """
    Convert any exception into an HTTP status and error envelope.

    Unknown exceptions never leak their message; they are reported with the
    fallback code and message.

    Returns:
        Tuple[int, Dict[str, Any]]: HTTP status and envelope
    """
    if isinstance(exc, PaymentProviderError):
        exc.with_correlation_id(correlation_id)
        return exc.http_status, exc.to_envelope()

    error = PaymentProviderError(
        fallback_message,
        code=fallback_code,
        http_status=fallback_status,
        correlation_id=correlation_id,
    )
    return error.http_status, error.to_envelope()
