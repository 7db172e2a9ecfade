"""Cash on delivery provider: no upstream calls, status lives in the session."""
from typing import Any, Mapping, Optional

from payment_orchestrator.core.events import ProviderStatusSnapshot
from payment_orchestrator.core.providers.base import (
    PaymentContext,
    PaymentProvider,
    ProviderCapabilities,
    ProviderResult,
)
from payment_orchestrator.core.state_machine import PaymentStatus


class CashOnDeliveryProvider(PaymentProvider):
    """Cash collected at delivery and confirmed by an operator."""

    provider_id = "cod"
    capabilities = ProviderCapabilities(
        supports_refunds=True,
        supports_webhooks=False,
        supports_manual_capture=False,
    )

    async def initiate_payment(self, ctx: PaymentContext) -> ProviderResult:
        return ProviderResult(
            PaymentStatus.PENDING,
            {"payment_method": "cod", "cod_state": "session_created"},
        )

    async def authorize_payment(
        self, ctx: PaymentContext, payload: Mapping[str, Any]
    ) -> ProviderResult:
        return ProviderResult(PaymentStatus.AUTHORIZED, {"cod_state": "authorized"})

    async def capture_payment(self, ctx: PaymentContext) -> ProviderResult:
        return ProviderResult(PaymentStatus.CAPTURED, {"cod_state": "captured"})

    async def refund_payment(
        self, ctx: PaymentContext, amount: Optional[int] = None
    ) -> ProviderResult:
        self.ensure_capability("supports_refunds", ctx.correlation_id)
        return ProviderResult(
            PaymentStatus.REFUNDED,
            {"cod_state": "refunded", "refund_amount": amount if amount is not None else ctx.amount},
        )

    async def cancel_payment(self, ctx: PaymentContext) -> ProviderResult:
        return ProviderResult(PaymentStatus.CANCELLED, {"cod_state": "canceled"})

    async def get_payment_status(self, ctx: PaymentContext) -> ProviderStatusSnapshot:
        return ProviderStatusSnapshot(status=ctx.status, raw_status=ctx.data.get("cod_state"))
