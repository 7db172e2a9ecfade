"""
Idempotency store for webhook deliveries and upstream order creation.

Implements:
- Webhook dedupe on a unique (provider, event_id) insert
- At-most-once upstream order creation per session under a keyed lock
- Amount/currency immutability once an upstream order exists
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.core.errors import AmountImmutableError
from payment_orchestrator.core.events import utcnow
from payment_orchestrator.database.locks import KeyedLock
from payment_orchestrator.database.models import ProviderOrderMapping
from payment_orchestrator.database.repositories import (
    ProviderOrderMappingRepository,
    WebhookEventRepository,
)
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DedupeResult:
    """Outcome of recording a webhook delivery."""

    processed: bool
    already_processed: bool


@dataclass(frozen=True)
class OrderResult:
    """Upstream order bound to a session."""

    provider_order_id: str
    created: bool


def order_lock_key(provider_id: str, payment_session_id: str) -> str:
    """Lock key serializing order creation for one session."""
    return f"payment_order:{provider_id}:{payment_session_id}"


class IdempotencyStore:
    """
    Exactly-once guards backed by unique constraints and keyed locks.

    Conflicts are not errors: a losing concurrent caller observes the
    winner's result.
    """

    def __init__(
        self,
        lock: KeyedLock,
        webhook_events: Optional[WebhookEventRepository] = None,
        order_mappings: Optional[ProviderOrderMappingRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize idempotency store.

        Args:
            lock: Keyed critical section used for order creation
            webhook_events: Webhook event repository
            order_mappings: Provider order mapping repository
            clock: Source of the current time
        """
        self.lock = lock
        self.webhook_events = webhook_events or WebhookEventRepository()
        self.order_mappings = order_mappings or ProviderOrderMappingRepository()
        self.clock = clock

    async def mark_processed(
        self, db: AsyncSession, provider: str, event_id: str
    ) -> DedupeResult:
        """
        Record a webhook delivery as processed.

        The first caller for a key gets ``processed=True`` and must apply the
        business effects; every later caller gets ``already_processed=True``.
        Runs inside the caller's transaction, so a rolled back delivery is
        not marked.

        Args:
            db: Database session (caller owns the transaction)
            provider: Provider id
            event_id: Provider event id

        Returns:
            DedupeResult: Dedupe outcome
        """
        inserted = await self.webhook_events.insert_if_absent(
            db, provider, event_id, self.clock()
        )
        return DedupeResult(processed=inserted, already_processed=not inserted)

    async def find_session_for_order(
        self, db: AsyncSession, provider_order_id: str
    ) -> Optional[str]:
        """Resolve the session bound to an upstream order id."""
        mapping = await self.order_mappings.get_by_order(db, provider_order_id)
        return mapping.payment_session_id if mapping else None

    async def create_or_get_order(
        self,
        payment_session_id: str,
        provider_id: str,
        amount: int,
        currency_code: str,
        create_order: Callable[[], Awaitable[str]],
        correlation_id: Optional[str] = None,
    ) -> OrderResult:
        """
        Return the session's upstream order, creating it at most once.

        Holds the session-scoped lock while checking for an existing mapping,
        calling ``create_order`` and storing its id with a conflict-safe
        insert. The stored row always wins over a freshly created id.

        Args:
            payment_session_id: Payment session id
            provider_id: Provider owning the order
            amount: Amount in minor units
            currency_code: ISO 4217 currency code
            create_order: Coroutine function creating the upstream order
            correlation_id: Correlation id for logs and errors

        Returns:
            OrderResult: Stored order id and whether this call created it

        Raises:
            AmountImmutableError: If amount or currency differ from the stored mapping
        """
        currency_code = currency_code.upper()
        key = order_lock_key(provider_id, payment_session_id)

        async with self.lock.hold(key) as db:
            existing = await self.order_mappings.get_by_session(db, payment_session_id)
            if existing is not None:
                self._ensure_unchanged(existing, amount, currency_code, correlation_id)
                metrics.record_upstream_order(provider_id, "reused")
                logger.info(
                    "PAYMENT_ORDER_REUSED",
                    payment_session_id=payment_session_id,
                    provider_id=provider_id,
                    provider_order_id=existing.provider_order_id,
                    correlation_id=correlation_id,
                )
                return OrderResult(existing.provider_order_id, created=False)

            created_id = await create_order()
            inserted = await self.order_mappings.insert_if_absent(
                db,
                payment_session_id=payment_session_id,
                provider_id=provider_id,
                provider_order_id=created_id,
                amount=amount,
                currency_code=currency_code,
                created_at=self.clock(),
            )
            stored = await self.order_mappings.get_by_session(db, payment_session_id)
            order_id = stored.provider_order_id if stored is not None else created_id

            if not inserted:
                logger.warning(
                    "PAYMENT_ORDER_CONVERGED",
                    payment_session_id=payment_session_id,
                    provider_id=provider_id,
                    created_order_id=created_id,
                    stored_order_id=order_id,
                    correlation_id=correlation_id,
                )

        metrics.record_upstream_order(provider_id, "created" if inserted else "reused")
        logger.info(
            "PAYMENT_ORDER_CREATED" if inserted else "PAYMENT_ORDER_REUSED",
            payment_session_id=payment_session_id,
            provider_id=provider_id,
            provider_order_id=order_id,
            amount=amount,
            currency_code=currency_code,
            correlation_id=correlation_id,
        )
        return OrderResult(order_id, created=inserted)

    @staticmethod
    def _ensure_unchanged(
        mapping: ProviderOrderMapping,
        amount: int,
        currency_code: str,
        correlation_id: Optional[str],
    ) -> None:
        if mapping.amount == amount and mapping.currency_code.upper() == currency_code:
            return
        raise AmountImmutableError(
            "Payment amount and currency cannot change after the upstream order is created",
            details={
                "payment_session_id": mapping.payment_session_id,
                "previous_amount": mapping.amount,
                "next_amount": amount,
                "previous_currency": mapping.currency_code,
                "next_currency": currency_code,
            },
            correlation_id=correlation_id,
        )
