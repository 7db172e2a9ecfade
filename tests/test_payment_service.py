"""
Payment service tests covering the checkout flow end to end.
"""
import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from conftest import (
    InProcessKeyedLock,
    RazorpayStub,
    build_test_services,
    deliver_webhook as deliver,
    load_session,
    razorpay_webhook,
)
from payment_orchestrator.config import Settings
from payment_orchestrator.container import Services, build_services
from payment_orchestrator.core.errors import (
    AmountImmutableError,
    PaymentProviderError,
    PaymentValidationError,
    ProviderUnavailableError,
    RateLimitedError,
    SignatureInvalidError,
    StateTransitionError,
)
from payment_orchestrator.core.providers.razorpay import checkout_signature
from payment_orchestrator.core.state_machine import PaymentStatus
from payment_orchestrator.integrations.razorpay_client import RazorpayClient


def checkout_payload(key_secret: str, order_id: str = "order_1", payment_id: str = "pay_1") -> dict:
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": checkout_signature(order_id, payment_id, key_secret),
    }


class TestInitiate:
    """Test suite for initiate_payment()."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_creates_session_and_order(
        self, services: Services, razorpay_stub: RazorpayStub
    ) -> None:
        result = await services.payments.initiate_payment("ps_1", 1499, "inr", "cid-1")

        assert result.provider_id == "razorpay"
        assert result.status == PaymentStatus.PENDING
        assert result.data["razorpay_order_id"] == "order_1"
        assert result.data["currency_code"] == "INR"

        order_request = razorpay_stub.orders["order_1"]
        assert order_request["amount"] == 1499
        assert order_request["receipt"] == "ps_1"
        assert order_request["notes"] == {"session_id": "ps_1"}

        session = await load_session(services)
        assert session.provider_id == "razorpay"
        assert session.status == "PENDING"
        assert session.currency_code == "INR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_initiate_reuses_order(
        self, services: Services, razorpay_stub: RazorpayStub
    ) -> None:
        first = await services.payments.initiate_payment("ps_1", 1499, "INR")
        second = await services.payments.initiate_payment("ps_1", 1499, "INR")

        assert first.data["razorpay_order_id"] == second.data["razorpay_order_id"]
        assert razorpay_stub.create_order_calls == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_initiate_creates_one_upstream_order(
        self, services: Services, razorpay_stub: RazorpayStub
    ) -> None:
        results = await asyncio.gather(
            *(services.payments.initiate_payment("ps_race", 1499, "INR") for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        assert len(successes) == 10
        assert razorpay_stub.create_order_calls == 1
        assert {r.data["razorpay_order_id"] for r in successes} == {"order_1"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_change_after_order(
        self, services: Services, razorpay_stub: RazorpayStub
    ) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        with pytest.raises(AmountImmutableError):
            await services.payments.initiate_payment("ps_1", 2999, "INR")

        assert razorpay_stub.create_order_calls == 1
        assert (await load_session(services)).amount == 1499

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsupported_currency(self, services: Services) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            await services.payments.initiate_payment("ps_1", 1499, "USD")
        assert exc_info.value.code == "CURRENCY_NOT_SUPPORTED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,currency", [(0, "INR"), (-5, "INR"), (100, "RUPEE")])
    async def test_invalid_input(self, services: Services, amount: int, currency: str) -> None:
        with pytest.raises(PaymentValidationError):
            await services.payments.initiate_payment("ps_1", amount, currency)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rate_limited_order_creation_is_not_retried(
        self, services: Services, razorpay_stub: RazorpayStub
    ) -> None:
        razorpay_stub.fail_next("POST", "/v1/orders", 429)

        with pytest.raises(RateLimitedError):
            await services.payments.initiate_payment("ps_1", 1499, "INR")
        assert razorpay_stub.create_order_calls == 1

        result = await services.payments.initiate_payment("ps_1", 1499, "INR")
        assert result.data["razorpay_order_id"] == "order_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_after_capture_is_rejected(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        await deliver(services.pipeline, razorpay_webhook("payment.captured"))

        with pytest.raises(StateTransitionError):
            await services.payments.initiate_payment("ps_1", 1499, "INR")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_kill_switch_blocks_new_payments(
        self,
        test_settings: Settings,
        engine: AsyncEngine,
        keyed_lock: InProcessKeyedLock,
        razorpay_client: RazorpayClient,
    ) -> None:
        settings = test_settings.model_copy(update={"payments_enabled": False})
        services = build_test_services(settings, engine, keyed_lock, razorpay_client)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await services.payments.initiate_payment("ps_1", 1499, "INR")
        assert exc_info.value.details == {"payments_enabled": False}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_razorpay_keys(
        self,
        test_settings: Settings,
        engine: AsyncEngine,
        keyed_lock: InProcessKeyedLock,
    ) -> None:
        settings = test_settings.model_copy(
            update={"razorpay_key_id": None, "razorpay_key_secret": None}
        )
        services = build_services(settings, engine=engine, lock=keyed_lock)

        with pytest.raises(ProviderUnavailableError, match="not configured"):
            await services.payments.initiate_payment("ps_1", 1499, "INR")


class TestCheckoutFlow:
    """Test suite for authorize, capture, refund and cancel."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_capture_refund(
        self, services: Services, razorpay_stub: RazorpayStub, key_secret: str
    ) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        razorpay_stub.add_payment("pay_1", "order_1", "authorized")

        authorized = await services.payments.authorize_payment(
            "ps_1", checkout_payload(key_secret), "cid-auth"
        )
        assert authorized.status == PaymentStatus.AUTHORIZED
        assert authorized.changed is True

        captured = await services.payments.capture_payment("ps_1")
        assert captured.status == PaymentStatus.CAPTURED
        assert captured.data["razorpay_payment_status"] == "captured"

        refunded = await services.payments.refund_payment("ps_1", 500)
        assert refunded.status == PaymentStatus.REFUNDED
        assert refunded.data["refund_amount"] == 500

        assert await services.payments.get_payment_status("ps_1") == PaymentStatus.REFUNDED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_with_bad_signature(
        self, services: Services, key_secret: str
    ) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        payload = checkout_payload(key_secret)
        payload["razorpay_signature"] = "f" * 64

        with pytest.raises(SignatureInvalidError):
            await services.payments.authorize_payment("ps_1", payload)
        assert await services.payments.get_payment_status("ps_1") == PaymentStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_with_foreign_order(self, services: Services, key_secret: str) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        with pytest.raises(PaymentValidationError, match="does not match"):
            await services.payments.authorize_payment(
                "ps_1", checkout_payload(key_secret, order_id="order_other")
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_missing_fields(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        with pytest.raises(PaymentValidationError) as exc_info:
            await services.payments.authorize_payment("ps_1", {"razorpay_order_id": "order_1"})
        assert exc_info.value.details["missing"] == ["razorpay_payment_id", "razorpay_signature"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_before_authorization_has_no_payment_id(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        with pytest.raises(PaymentValidationError, match="no Razorpay payment id"):
            await services.payments.capture_payment("ps_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_pending_payment(self, services: Services) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")

        result = await services.payments.cancel_payment("ps_1")
        assert result.status == PaymentStatus.CANCELLED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_cancel_paid_payment(self, services: Services, key_secret: str) -> None:
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        await services.payments.authorize_payment("ps_1", checkout_payload(key_secret))

        with pytest.raises(PaymentProviderError) as exc_info:
            await services.payments.cancel_payment("ps_1")
        assert exc_info.value.code == "CANNOT_CANCEL_PAID_PAYMENT"
        assert exc_info.value.http_status == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_requires_capture(
        self, services: Services, razorpay_stub: RazorpayStub, key_secret: str
    ) -> None:
        """Refunding an authorized payment is an illegal transition."""
        await services.payments.initiate_payment("ps_1", 1499, "INR")
        await services.payments.authorize_payment("ps_1", checkout_payload(key_secret))
        razorpay_stub.add_payment("pay_1", "order_1", "authorized")

        with pytest.raises(StateTransitionError):
            await services.payments.refund_payment("ps_1")
        assert not [r for r in razorpay_stub.requests if r.url.path.endswith("/refund")]
        assert await services.payments.get_payment_status("ps_1") == PaymentStatus.AUTHORIZED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session(self, services: Services) -> None:
        with pytest.raises(PaymentValidationError, match="not found"):
            await services.payments.get_payment_status("ps_missing")


class TestCashOnDelivery:
    """Test suite for the cash on delivery provider."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cod_lifecycle(
        self,
        test_settings: Settings,
        engine: AsyncEngine,
        keyed_lock: InProcessKeyedLock,
        razorpay_client: RazorpayClient,
        razorpay_stub: RazorpayStub,
    ) -> None:
        settings = test_settings.model_copy(update={"payment_provider_default": "cod"})
        services = build_test_services(settings, engine, keyed_lock, razorpay_client)

        initiated = await services.payments.initiate_payment("ps_cod", 2500, "INR")
        assert initiated.provider_id == "cod"
        assert initiated.data["payment_method"] == "cod"

        await services.payments.authorize_payment("ps_cod", {})
        captured = await services.payments.capture_payment("ps_cod")
        assert captured.status == PaymentStatus.CAPTURED
        assert captured.data["cod_state"] == "captured"
        assert razorpay_stub.requests == []
