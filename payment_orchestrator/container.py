"""Wiring of every orchestration component from one Settings instance."""
from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings
from payment_orchestrator.core.gateway import UpstreamCallGateway
from payment_orchestrator.core.idempotency import IdempotencyStore
from payment_orchestrator.core.payment_service import PaymentService
from payment_orchestrator.core.providers import (
    CashOnDeliveryProvider,
    PaymentProvider,
    RazorpayProvider,
)
from payment_orchestrator.core.reconciliation import ReconciliationEngine
from payment_orchestrator.core.router import PaymentProviderRouter
from payment_orchestrator.core.webhook_pipeline import WebhookPipeline
from payment_orchestrator.core.webhook_registry import (
    RazorpayWebhookProvider,
    WebhookProviderRegistry,
)
from payment_orchestrator.database.connection import (
    close_db,
    create_engine,
    create_session_factory,
)
from payment_orchestrator.database.locks import AdvisoryLock, KeyedLock
from payment_orchestrator.integrations.razorpay_client import RazorpayClient

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Constructed components sharing one engine and configuration."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    idempotency: IdempotencyStore
    registry: WebhookProviderRegistry
    providers: Dict[str, PaymentProvider]
    router: PaymentProviderRouter
    pipeline: WebhookPipeline
    reconciliation: ReconciliationEngine
    payments: PaymentService
    razorpay_client: Optional[RazorpayClient] = None

    async def aclose(self) -> None:
        """Release HTTP clients and database connections."""
        if self.razorpay_client is not None:
            await self.razorpay_client.aclose()
        await close_db(self.engine)


def build_services(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    lock: Optional[KeyedLock] = None,
    razorpay_client: Optional[RazorpayClient] = None,
    razorpay_gateway: Optional[UpstreamCallGateway] = None,
) -> Services:
    """
    Build all components.

    Args:
        settings: Application settings
        engine: Database engine; created from settings when omitted
        lock: Keyed lock for order creation; PostgreSQL advisory lock by default
        razorpay_client: Razorpay API client; created from settings when omitted
        razorpay_gateway: Gateway for Razorpay calls; created from settings when omitted

    Returns:
        Services: Wired components
    """
    engine = engine or create_engine(settings)
    session_factory = create_session_factory(engine)
    idempotency = IdempotencyStore(lock or AdvisoryLock(session_factory))

    if razorpay_client is None and settings.razorpay_configured:
        razorpay_client = RazorpayClient(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            base_url=settings.razorpay_api_base_url,
            timeout=settings.upstream_timeout_seconds,
        )

    razorpay = RazorpayProvider(
        settings,
        idempotency,
        razorpay_gateway or UpstreamCallGateway.from_settings("razorpay", settings),
        client=razorpay_client,
    )
    providers: Dict[str, PaymentProvider] = {
        provider.provider_id: provider for provider in (razorpay, CashOnDeliveryProvider())
    }
    registry = WebhookProviderRegistry([RazorpayWebhookProvider()])
    router = PaymentProviderRouter(settings, providers.values(), session_factory)

    services = Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        idempotency=idempotency,
        registry=registry,
        providers=providers,
        router=router,
        pipeline=WebhookPipeline(settings, registry, idempotency, session_factory),
        reconciliation=ReconciliationEngine(settings, router, session_factory),
        payments=PaymentService(router, session_factory),
        razorpay_client=razorpay_client,
    )
    logger.info(
        "payment_services_initialized",
        providers=sorted(providers),
        webhook_providers=registry.provider_ids,
        default_provider=settings.payment_provider_default,
        payments_enabled=settings.payments_enabled,
    )
    return services
