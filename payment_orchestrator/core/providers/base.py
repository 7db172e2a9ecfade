"""Payment provider adapter interface."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from payment_orchestrator.core.errors import NotSupportedError
from payment_orchestrator.core.events import ProviderStatusSnapshot
from payment_orchestrator.core.state_machine import PaymentStatus


@dataclass(frozen=True)
class ProviderCapabilities:
    """Features a provider adapter supports."""

    supports_refunds: bool
    supports_webhooks: bool
    supports_manual_capture: bool


@dataclass
class PaymentContext:
    """Session state handed to an adapter for one operation."""

    payment_session_id: str
    amount: int
    currency_code: str
    status: PaymentStatus = PaymentStatus.PENDING
    data: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderResult:
    """Status and provider data produced by an adapter operation."""

    status: PaymentStatus
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """Adapter between canonical payment operations and one provider."""

    provider_id: str
    capabilities: ProviderCapabilities

    def ensure_capability(self, capability: str, correlation_id: Optional[str] = None) -> None:
        """
        Fail if the provider lacks ``capability``.

        Raises:
            NotSupportedError: If the capability flag is false
        """
        if not getattr(self.capabilities, capability):
            raise NotSupportedError(
                f"Provider {self.provider_id} does not support {capability.replace('supports_', '')}",
                details={"provider_id": self.provider_id, "capability": capability},
                correlation_id=correlation_id,
            )

    @abstractmethod
    async def initiate_payment(self, ctx: PaymentContext) -> ProviderResult:
        """Start a payment for the session."""

    @abstractmethod
    async def authorize_payment(
        self, ctx: PaymentContext, payload: Mapping[str, Any]
    ) -> ProviderResult:
        """Confirm the customer's authorization of the payment."""

    @abstractmethod
    async def capture_payment(self, ctx: PaymentContext) -> ProviderResult:
        """Capture an authorized payment."""

    @abstractmethod
    async def refund_payment(
        self, ctx: PaymentContext, amount: Optional[int] = None
    ) -> ProviderResult:
        """Refund a captured payment."""

    @abstractmethod
    async def cancel_payment(self, ctx: PaymentContext) -> ProviderResult:
        """Cancel an unpaid payment."""

    @abstractmethod
    async def get_payment_status(self, ctx: PaymentContext) -> ProviderStatusSnapshot:
        """Poll the provider for the payment's current status."""
