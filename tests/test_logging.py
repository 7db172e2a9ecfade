"""
Unit tests for logging configuration and the redaction processor.
"""
import pytest
import structlog

from payment_orchestrator.config import Settings
from payment_orchestrator.core.sanitize import REDACTED
from payment_orchestrator.monitoring.logging import (
    build_app_context_processor,
    redact_sensitive_fields,
    setup_logging,
)


class TestRedactionProcessor:
    """Test suite for redact_sensitive_fields()."""

    @pytest.mark.unit
    def test_redacts_secrets_and_pii(self) -> None:
        event = {
            "event": "PAYMENT_WEBHOOK_RECEIVED",
            "razorpay_signature": "abc123",
            "payload": {"email": "buyer@example.com", "amount": 1499},
            "correlation_id": "cid-1",
        }

        result = redact_sensitive_fields(None, "info", event)

        assert result["event"] == "PAYMENT_WEBHOOK_RECEIVED"
        assert result["razorpay_signature"] == REDACTED
        assert result["payload"] == {"email": REDACTED, "amount": 1499}
        assert result["correlation_id"] == "cid-1"

    @pytest.mark.unit
    def test_truncates_long_values(self) -> None:
        result = redact_sensitive_fields(None, "info", {"event": "x", "note": "a" * 1000})
        assert len(result["note"]) < 400
        assert result["note"].endswith("[truncated]")


class TestSetupLogging:
    """Test suite for setup_logging()."""

    @pytest.mark.unit
    def test_app_context(self, test_settings: Settings) -> None:
        processor = build_app_context_processor(test_settings)
        event = processor(None, "info", {"event": "x"})
        assert event["app_name"] == "payment-orchestrator-test"
        assert event["app_env"] == "test"

    @pytest.mark.unit
    def test_setup_configures_structlog(self, test_settings: Settings) -> None:
        setup_logging(test_settings)
        try:
            processors = structlog.get_config()["processors"]
            assert redact_sensitive_fields in processors
            assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        finally:
            structlog.reset_defaults()
