"""
Unit tests for the error taxonomy and redaction.
"""
import pytest

from payment_orchestrator.core.errors import (
    AmountImmutableError,
    NotSupportedError,
    PaymentErrorCode,
    PaymentProviderError,
    PaymentValidationError,
    ProviderUnavailableError,
    RateLimitedError,
    SignatureInvalidError,
    StateTransitionError,
    UpstreamError,
    to_error_envelope,
)
from payment_orchestrator.core.sanitize import (
    MAX_ITEMS,
    MAX_STRING_LENGTH,
    REDACTED,
    is_sensitive_key,
    sanitize,
    sanitize_mapping,
)


class TestErrors:
    """Test suite for payment errors."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error_class,code,status",
        [
            (PaymentValidationError, "VALIDATION_ERROR", 400),
            (SignatureInvalidError, "SIGNATURE_INVALID", 401),
            (ProviderUnavailableError, "PROVIDER_UNAVAILABLE", 503),
            (RateLimitedError, "RATE_LIMITED", 429),
            (UpstreamError, "UPSTREAM_ERROR", 502),
            (StateTransitionError, "STATE_TRANSITION_INVALID", 409),
            (NotSupportedError, "NOT_SUPPORTED", 400),
            (AmountImmutableError, "AMOUNT_IMMUTABLE", 409),
        ],
    )
    def test_default_code_and_status(self, error_class: type, code: str, status: int) -> None:
        error = error_class("boom")
        assert error.code == code
        assert error.http_status == status
        assert isinstance(error, PaymentProviderError)

    @pytest.mark.unit
    def test_explicit_code_and_status_override_defaults(self) -> None:
        error = UpstreamError("denied", code=PaymentErrorCode.AUTH_FAILED, http_status=502)
        assert error.code == "AUTH_FAILED"
        assert error.http_status == 502

    @pytest.mark.unit
    def test_details_are_sanitized(self) -> None:
        error = PaymentValidationError(
            "bad", details={"razorpay_signature": "abc", "customer_email": "a@b.c", "amount": 10}
        )
        assert error.details == {
            "razorpay_signature": REDACTED,
            "customer_email": REDACTED,
            "amount": 10,
        }

    @pytest.mark.unit
    def test_envelope_shape(self) -> None:
        error = ProviderUnavailableError(
            "Payments are disabled", details={"payments_enabled": False}, correlation_id="cid-9"
        )
        assert error.to_envelope() == {
            "error": {
                "code": "PROVIDER_UNAVAILABLE",
                "message": "Payments are disabled",
                "details": {"payments_enabled": False},
                "correlation_id": "cid-9",
            }
        }

    @pytest.mark.unit
    def test_to_error_envelope_keeps_existing_correlation_id(self) -> None:
        error = RateLimitedError("slow down", correlation_id="original")
        status, envelope = to_error_envelope(error, "request-cid")
        assert status == 429
        assert envelope["error"]["correlation_id"] == "original"

    @pytest.mark.unit
    def test_to_error_envelope_binds_missing_correlation_id(self) -> None:
        status, envelope = to_error_envelope(SignatureInvalidError("nope"), "request-cid")
        assert status == 401
        assert envelope["error"]["correlation_id"] == "request-cid"

    @pytest.mark.unit
    def test_unknown_exception_uses_fallback_without_leaking_message(self) -> None:
        status, envelope = to_error_envelope(
            RuntimeError("connection string postgres://user:pw@db"),
            "cid",
            fallback_code="PAYMENT_WEBHOOK_FAILED",
            fallback_message="Webhook processing failed",
        )
        assert status == 500
        assert envelope["error"]["code"] == "PAYMENT_WEBHOOK_FAILED"
        assert envelope["error"]["message"] == "Webhook processing failed"
        assert "postgres" not in str(envelope)


class TestSanitize:
    """Test suite for sanitize()."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "key",
        ["razorpay_key_secret", "access_token", "Authorization", "Cookie", "api_key", "email", "phone"],
    )
    def test_sensitive_keys(self, key: str) -> None:
        assert is_sensitive_key(key)

    @pytest.mark.unit
    def test_plain_keys_are_kept(self) -> None:
        assert not is_sensitive_key("razorpay_order_id")
        assert sanitize({"razorpay_order_id": "order_1"}) == {"razorpay_order_id": "order_1"}

    @pytest.mark.unit
    def test_nested_values_are_redacted(self) -> None:
        value = {"payment": {"notes": {"phone": "+91000", "session_id": "ps_1"}}}
        assert sanitize(value) == {
            "payment": {"notes": {"phone": REDACTED, "session_id": "ps_1"}}
        }

    @pytest.mark.unit
    def test_long_strings_are_truncated(self) -> None:
        result = sanitize("x" * (MAX_STRING_LENGTH + 50))
        assert result.startswith("x" * MAX_STRING_LENGTH)
        assert result.endswith("...[truncated]")

    @pytest.mark.unit
    def test_depth_and_items_are_capped(self) -> None:
        assert sanitize({"a": {"b": {"c": {"d": 1}}}}) == {"a": {"b": {"c": "[MaxDepth]"}}}

        items = sanitize(list(range(MAX_ITEMS + 5)))
        assert len(items) == MAX_ITEMS + 1
        assert items[-1] == "...[5 more]"

    @pytest.mark.unit
    def test_input_is_not_mutated(self) -> None:
        original = {"token": "t", "inner": {"password": "p"}}
        sanitize_mapping(original)
        assert original == {"token": "t", "inner": {"password": "p"}}
