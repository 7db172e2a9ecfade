"""
Webhook pipeline tests: verification, dedupe, monotonic transitions.
"""
import asyncio

import pytest

from conftest import deliver_webhook as deliver, load_session, razorpay_webhook
from payment_orchestrator.container import Services
from payment_orchestrator.core.errors import (
    PaymentValidationError,
    ProviderUnavailableError,
    SignatureInvalidError,
)
from payment_orchestrator.core.webhook_pipeline import WebhookPipeline


class TestWebhookProcessing:
    """Test suite for webhook processing."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_captured_webhook_updates_session(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        result = await deliver(services.pipeline, razorpay_webhook("payment.captured"))

        assert result.processed is True
        assert result.deduped is False
        assert result.matched is True
        assert result.changed is True
        assert result.payment_session_id == "ps_1"
        assert result.correlation_id == "cid-webhook"

        session = await load_session(services)
        assert session.status == "CAPTURED"
        assert session.data["razorpay_payment_id"] == "pay_1"
        assert session.data["razorpay_order_id"] == "order_1"
        assert session.data["provider_event_id"] == "evt_1"
        assert session.data["webhook_verified"] is True
        assert session.correlation_id == "cid-webhook"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_deduped(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.captured")

        first = await deliver(services.pipeline, body)
        second = await deliver(services.pipeline, body)

        assert first.processed is True
        assert second.processed is False
        assert second.deduped is True
        assert second.to_response()["ok"] is True
        assert (await load_session(services)).status == "CAPTURED"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.authorized", status="authorized")

        results = await asyncio.gather(*(deliver(services.pipeline, body) for _ in range(5)))

        assert [r.processed for r in results].count(True) == 1
        assert [r.deduped for r in results].count(True) == 4
        assert (await load_session(services)).status == "AUTHORIZED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_event_does_not_regress(self, services: Services) -> None:
        """A late payment.authorized after payment.captured is absorbed."""
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        await deliver(services.pipeline, razorpay_webhook("payment.captured"), event_id="evt_1")

        late = await deliver(
            services.pipeline,
            razorpay_webhook("payment.authorized", status="authorized"),
            event_id="evt_2",
        )

        assert late.processed is True
        assert late.matched is True
        assert late.changed is False
        session = await load_session(services)
        assert session.status == "CAPTURED"
        assert session.data["provider_event_id"] == "evt_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_after_authorized(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        await deliver(
            services.pipeline,
            razorpay_webhook("payment.authorized", status="authorized"),
            event_id="evt_1",
        )
        await deliver(
            services.pipeline, razorpay_webhook("payment.failed", status="failed"), event_id="evt_2"
        )

        session = await load_session(services)
        assert session.status == "FAILED"
        assert session.data["razorpay_payment_status"] == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_paid_resolves_session_from_order_mapping(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        result = await deliver(
            services.pipeline, razorpay_webhook("order.paid", session_id=None), event_id="evt_9"
        )

        assert result.payment_session_id == "ps_1"
        assert (await load_session(services)).status == "CAPTURED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_body_hash_event_id_dedupes_identical_bodies(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.captured")

        first = await deliver(services.pipeline, body, event_id=None)
        second = await deliver(services.pipeline, body, event_id=None)

        assert first.event_id.startswith("hash_")
        assert second.deduped is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrapped_route_provider_id(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        result = await deliver(
            services.pipeline, razorpay_webhook("payment.captured"), provider="pp_razorpay_razorpay"
        )
        assert result.provider == "razorpay"


class TestWebhookRejection:
    """Test suite for rejected deliveries."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider(self, services: Services) -> None:
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await deliver(services.pipeline, razorpay_webhook("payment.captured"), provider="paypal")
        assert exc_info.value.http_status == 404
        assert exc_info.value.correlation_id == "cid-webhook"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_without_marking(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.captured")

        with pytest.raises(SignatureInvalidError) as exc_info:
            await deliver(services.pipeline, body, signature="0" * 64)
        assert exc_info.value.http_status == 401
        assert exc_info.value.details["reason"] == "signature_mismatch"
        assert (await load_session(services)).status == "PENDING"

        result = await deliver(services.pipeline, body)
        assert result.processed is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_header(self, services: Services) -> None:
        with pytest.raises(SignatureInvalidError):
            await deliver(services.pipeline, razorpay_webhook("payment.captured"), signature="")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_secret_is_a_server_error(self, services: Services) -> None:
        settings = services.settings.model_copy(update={"razorpay_webhook_secret": None})
        pipeline = WebhookPipeline(
            settings, services.registry, services.idempotency, services.session_factory
        )
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await deliver(pipeline, razorpay_webhook("payment.captured"))
        assert exc_info.value.http_status == 500

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unverified_override(self, services: Services) -> None:
        """With the override on, a bad signature is processed and flagged."""
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        settings = services.settings.model_copy(update={"allow_unverified_webhooks": True})
        pipeline = WebhookPipeline(
            settings, services.registry, services.idempotency, services.session_factory
        )

        result = await deliver(pipeline, razorpay_webhook("payment.captured"), signature="bad")

        assert result.processed is True
        assert result.verified is False
        session = await load_session(services)
        assert session.status == "CAPTURED"
        assert session.data["webhook_verified"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session_is_retryable(self, services: Services) -> None:
        """Failure after dedupe rolls the dedupe mark back."""
        body = razorpay_webhook("payment.captured")

        with pytest.raises(PaymentValidationError, match="not found"):
            await deliver(services.pipeline, body)

        await services.payments.initiate_payment("ps_1", 1499, "INR")
        result = await deliver(services.pipeline, body)
        assert result.processed is True
        assert (await load_session(services)).status == "CAPTURED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsupported_event(self, services: Services) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            await deliver(services.pipeline, razorpay_webhook("refund.processed"))
        assert exc_info.value.details == {"event_type": "refund.processed"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mutate",
        [
            lambda body: body.update(payload=["not", "an", "object"]),
            lambda body: body["payload"].update(payment="oops"),
            lambda body: body["payload"]["payment"].update(entity=["pay_1"]),
            lambda body: body["payload"]["payment"]["entity"].update(id={"nested": True}),
            lambda body: body["payload"]["payment"]["entity"].update(status=["captured"]),
        ],
        ids=["payload-list", "payment-string", "entity-list", "id-object", "status-list"],
    )
    async def test_malformed_payload_is_a_validation_error(
        self, services: Services, mutate
    ) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.captured")
        mutate(body)

        with pytest.raises(PaymentValidationError) as exc_info:
            await deliver(services.pipeline, body)
        assert exc_info.value.http_status == 400

        # Nothing was marked, so a corrected delivery still applies.
        result = await deliver(services.pipeline, razorpay_webhook("payment.captured"))
        assert result.processed is True
        assert (await load_session(services)).status == "CAPTURED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_numeric_entity_ids_are_stringified(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        body = razorpay_webhook("payment.captured")
        body["payload"]["payment"]["entity"]["id"] = 12345

        result = await deliver(services.pipeline, body)

        assert result.processed is True
        session = await load_session(services)
        assert session.status == "CAPTURED"
        assert session.data["razorpay_payment_id"] == "12345"
