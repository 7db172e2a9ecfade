"""
Razorpay payment provider adapter.

Implements:
- Idempotent order creation through the idempotency store
- Checkout signature verification on authorization
- Capture and refund through the upstream gateway
- Status polling for reconciliation
"""
import hashlib
import hmac
from typing import Any, Dict, List, Mapping, Optional

import structlog

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import (
    PaymentErrorCode,
    PaymentProviderError,
    PaymentValidationError,
    ProviderUnavailableError,
    SignatureInvalidError,
    UpstreamError,
)
from payment_orchestrator.core.events import ProviderStatusSnapshot, utcnow
from payment_orchestrator.core.gateway import UpstreamCallGateway
from payment_orchestrator.core.idempotency import IdempotencyStore
from payment_orchestrator.core.providers.base import (
    PaymentContext,
    PaymentProvider,
    ProviderCapabilities,
    ProviderResult,
)
from payment_orchestrator.core.state_machine import PaymentStatus
from payment_orchestrator.integrations.razorpay_client import RazorpayClient

logger = structlog.get_logger(__name__)

RAZORPAY_STATUS_MAP: Dict[str, PaymentStatus] = {
    "created": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "captured": PaymentStatus.CAPTURED,
    "refunded": PaymentStatus.REFUNDED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
}

# Most advanced first when an order carries several payment attempts.
_STATUS_PRIORITY = {
    PaymentStatus.REFUNDED: 5,
    PaymentStatus.CAPTURED: 4,
    PaymentStatus.AUTHORIZED: 3,
    PaymentStatus.FAILED: 2,
    PaymentStatus.CANCELLED: 1,
    PaymentStatus.PENDING: 0,
}

PAID_RAZORPAY_STATUSES = frozenset({"authorized", "captured", "refunded"})

MAX_RECEIPT_LENGTH = 40


def _scalar_str(value: Any) -> Optional[str]:
    """Stringify a scalar response field; None and empty values stay None."""
    if value is None or value == "":
        return None
    if isinstance(value, (Mapping, list)):
        raise PaymentValidationError(
            "Razorpay payment field must be a scalar",
            details={"value_type": type(value).__name__},
        )
    return str(value)


def map_razorpay_status(raw_status: Optional[str]) -> Optional[PaymentStatus]:
    """Map a Razorpay payment status to the canonical status."""
    if not raw_status:
        return None
    return RAZORPAY_STATUS_MAP.get(str(raw_status).strip().lower())


def checkout_signature(order_id: str, payment_id: str, key_secret: str) -> str:
    """Expected checkout signature: hex HMAC-SHA256 of ``order_id|payment_id``."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayProvider(PaymentProvider):
    """Razorpay orders/payments adapter (INR only)."""

    provider_id = "razorpay"
    capabilities = ProviderCapabilities(
        supports_refunds=True,
        supports_webhooks=True,
        supports_manual_capture=True,
    )
    supported_currencies = frozenset({"INR"})

    def __init__(
        self,
        settings: Settings,
        idempotency: IdempotencyStore,
        gateway: UpstreamCallGateway,
        client: Optional[RazorpayClient] = None,
    ):
        """
        Initialize Razorpay provider.

        Args:
            settings: Application settings (keys and mode)
            idempotency: Store guarding upstream order creation
            gateway: Upstream call gateway for Razorpay
            client: Razorpay API client; None when keys are not configured
        """
        self.settings = settings
        self.idempotency = idempotency
        self.gateway = gateway
        self.client = client

    def _require_client(self, correlation_id: Optional[str]) -> RazorpayClient:
        if self.client is None:
            raise ProviderUnavailableError(
                "Razorpay API keys are not configured",
                details={"provider_id": self.provider_id, "missing": ["RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"]},
                correlation_id=correlation_id,
            )
        return self.client

    def _validate_checkout(self, ctx: PaymentContext) -> str:
        if not ctx.payment_session_id:
            raise PaymentValidationError(
                "Payment session id is required", correlation_id=ctx.correlation_id
            )
        if isinstance(ctx.amount, bool) or not isinstance(ctx.amount, int) or ctx.amount <= 0:
            raise PaymentValidationError(
                "Amount must be a positive integer in minor units",
                details={"amount": ctx.amount},
                correlation_id=ctx.correlation_id,
            )
        currency = (ctx.currency_code or "").upper()
        if currency not in self.supported_currencies:
            raise PaymentValidationError(
                f"Razorpay supports only INR, got {currency or '<missing>'}",
                code=PaymentErrorCode.CURRENCY_NOT_SUPPORTED,
                details={"currency_code": currency, "supported": sorted(self.supported_currencies)},
                correlation_id=ctx.correlation_id,
            )
        return currency

    async def initiate_payment(self, ctx: PaymentContext) -> ProviderResult:
        currency = self._validate_checkout(ctx)
        client = self._require_client(ctx.correlation_id)

        async def create_order() -> str:
            response = await self.gateway.call(
                "orders.create",
                lambda: client.create_order(
                    amount=ctx.amount,
                    currency=currency,
                    receipt=ctx.payment_session_id[:MAX_RECEIPT_LENGTH],
                    notes={"session_id": ctx.payment_session_id},
                ),
                correlation_id=ctx.correlation_id,
            )
            order_id = response.get("id")
            if not order_id:
                raise UpstreamError(
                    "Razorpay order response has no id",
                    details={"provider_id": self.provider_id, "endpoint": "orders.create"},
                    correlation_id=ctx.correlation_id,
                )
            return str(order_id)

        order = await self.idempotency.create_or_get_order(
            ctx.payment_session_id,
            self.provider_id,
            ctx.amount,
            currency,
            create_order,
            correlation_id=ctx.correlation_id,
        )
        return ProviderResult(
            PaymentStatus.PENDING,
            {
                "razorpay_order_id": order.provider_order_id,
                "razorpay_key_id": self.settings.razorpay_key_id,
                "amount": ctx.amount,
                "currency_code": currency,
                "payment_status": PaymentStatus.PENDING.value,
            },
        )

    async def authorize_payment(
        self, ctx: PaymentContext, payload: Mapping[str, Any]
    ) -> ProviderResult:
        order_id = str(payload.get("razorpay_order_id") or "").strip()
        payment_id = str(payload.get("razorpay_payment_id") or "").strip()
        signature = str(payload.get("razorpay_signature") or "").strip()
        missing = [
            name
            for name, value in (
                ("razorpay_order_id", order_id),
                ("razorpay_payment_id", payment_id),
                ("razorpay_signature", signature),
            )
            if not value
        ]
        if missing:
            raise PaymentValidationError(
                "Missing Razorpay checkout fields",
                details={"missing": missing},
                correlation_id=ctx.correlation_id,
            )

        stored_order_id = ctx.data.get("razorpay_order_id")
        if stored_order_id and stored_order_id != order_id:
            raise PaymentValidationError(
                "Razorpay order id does not match the payment session",
                details={"expected_order_id": stored_order_id, "received_order_id": order_id},
                correlation_id=ctx.correlation_id,
            )

        key_secret = self.settings.razorpay_key_secret
        if not key_secret:
            raise ProviderUnavailableError(
                "Razorpay key secret is not configured",
                details={"provider_id": self.provider_id},
                correlation_id=ctx.correlation_id,
            )
        expected = checkout_signature(order_id, payment_id, key_secret)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            raise SignatureInvalidError(
                "Razorpay checkout signature mismatch",
                details={"razorpay_order_id": order_id, "razorpay_payment_id": payment_id},
                correlation_id=ctx.correlation_id,
            )

        return ProviderResult(
            PaymentStatus.AUTHORIZED,
            {
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_checkout_verified_at": utcnow().isoformat(),
                "payment_status": PaymentStatus.AUTHORIZED.value,
            },
        )

    def _payment_id(self, ctx: PaymentContext) -> str:
        payment_id = ctx.data.get("razorpay_payment_id")
        if not payment_id:
            raise PaymentValidationError(
                "Payment session has no Razorpay payment id",
                details={"payment_session_id": ctx.payment_session_id},
                correlation_id=ctx.correlation_id,
            )
        return str(payment_id)

    async def capture_payment(self, ctx: PaymentContext) -> ProviderResult:
        client = self._require_client(ctx.correlation_id)
        payment_id = self._payment_id(ctx)
        response = await self.gateway.call(
            "payments.capture",
            lambda: client.capture_payment(payment_id, ctx.amount, ctx.currency_code.upper()),
            correlation_id=ctx.correlation_id,
        )
        raw_status = response.get("status")
        status = map_razorpay_status(raw_status) or PaymentStatus.CAPTURED
        return ProviderResult(
            status,
            {
                "razorpay_payment_id": payment_id,
                "razorpay_payment_status": raw_status,
                "payment_status": status.value,
            },
        )

    async def refund_payment(
        self, ctx: PaymentContext, amount: Optional[int] = None
    ) -> ProviderResult:
        self.ensure_capability("supports_refunds", ctx.correlation_id)
        client = self._require_client(ctx.correlation_id)
        payment_id = self._payment_id(ctx)
        response = await self.gateway.call(
            "payments.refund",
            lambda: client.refund_payment(
                payment_id, amount=amount, notes={"session_id": ctx.payment_session_id}
            ),
            correlation_id=ctx.correlation_id,
        )
        return ProviderResult(
            PaymentStatus.REFUNDED,
            {
                "razorpay_refund_id": response.get("id"),
                "razorpay_refund_status": response.get("status"),
                "refund_amount": response.get("amount", amount),
                "payment_status": PaymentStatus.REFUNDED.value,
            },
        )

    async def cancel_payment(self, ctx: PaymentContext) -> ProviderResult:
        raw_status = str(ctx.data.get("razorpay_payment_status") or "").lower()
        if raw_status in PAID_RAZORPAY_STATUSES or ctx.status in (
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.REFUNDED,
        ):
            raise PaymentProviderError(
                "Cannot cancel a payment that has been paid; refund it instead",
                code=PaymentErrorCode.CANNOT_CANCEL_PAID_PAYMENT,
                http_status=409,
                details={
                    "payment_session_id": ctx.payment_session_id,
                    "status": ctx.status.value,
                    "razorpay_payment_status": raw_status or None,
                },
                correlation_id=ctx.correlation_id,
            )
        return ProviderResult(
            PaymentStatus.CANCELLED,
            {"payment_status": PaymentStatus.CANCELLED.value},
        )

    async def get_payment_status(self, ctx: PaymentContext) -> ProviderStatusSnapshot:
        client = self._require_client(ctx.correlation_id)
        payment_id = ctx.data.get("razorpay_payment_id")
        if payment_id:
            payment = await self.gateway.call(
                "payments.fetch",
                lambda: client.fetch_payment(str(payment_id)),
                correlation_id=ctx.correlation_id,
            )
            return self._snapshot(payment)

        order_id = ctx.data.get("razorpay_order_id")
        if not order_id:
            return ProviderStatusSnapshot(status=None)

        response = await self.gateway.call(
            "orders.payments",
            lambda: client.fetch_order_payments(str(order_id)),
            correlation_id=ctx.correlation_id,
        )
        payments: List[Mapping[str, Any]] = [
            item for item in response.get("items") or [] if isinstance(item, Mapping)
        ]
        if not payments:
            return ProviderStatusSnapshot(status=None)

        best = max(
            payments,
            key=lambda item: _STATUS_PRIORITY.get(
                map_razorpay_status(item.get("status")) or PaymentStatus.PENDING, 0
            ),
        )
        return self._snapshot(best)

    def _snapshot(self, payment: Any) -> ProviderStatusSnapshot:
        if not isinstance(payment, Mapping):
            raise PaymentValidationError(
                "Razorpay payment response is not an object",
                details={"response_type": type(payment).__name__},
            )
        raw_status = _scalar_str(payment.get("status"))
        payment_id = _scalar_str(payment.get("id"))
        order_id = _scalar_str(payment.get("order_id"))
        status = map_razorpay_status(raw_status)
        if raw_status and status is None:
            logger.warning(
                "razorpay_unknown_payment_status",
                raw_status=raw_status,
                provider_payment_id=payment_id,
            )
        return ProviderStatusSnapshot(
            status=status,
            raw_status=raw_status,
            provider_payment_id=payment_id,
            data={
                "razorpay_payment_id": payment_id,
                "razorpay_order_id": order_id,
                "razorpay_payment_status": raw_status,
            },
        )
