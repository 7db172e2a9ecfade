"""
Data access for sessions, order mappings and webhook events.

Repositories operate on a caller-supplied ``AsyncSession`` so that several
operations can share one transaction. Conflict-safe inserts use the
dialect's ``INSERT ... ON CONFLICT DO NOTHING RETURNING``.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from payment_orchestrator.core.state_machine import PaymentStatus
from payment_orchestrator.database.models import (
    PaymentSession,
    PaymentWebhookEvent,
    ProviderOrderMapping,
)


def _insert(db: AsyncSession, model: Any) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.bind.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


class WebhookEventRepository:
    """Webhook dedupe records keyed by (provider, event_id)."""

    async def insert_if_absent(
        self, db: AsyncSession, provider: str, event_id: str, received_at: datetime
    ) -> bool:
        """
        Record a webhook delivery.

        Returns:
            bool: True if this call inserted the row, False if it already existed
        """
        stmt = (
            _insert(db, PaymentWebhookEvent)
            .values(provider=provider, event_id=event_id, received_at=received_at)
            .on_conflict_do_nothing(index_elements=["provider", "event_id"])
            .returning(PaymentWebhookEvent.id)
        )
        result = await db.execute(stmt)
        return result.first() is not None


class ProviderOrderMappingRepository:
    """Session to upstream order mappings."""

    async def get_by_session(
        self, db: AsyncSession, payment_session_id: str
    ) -> Optional[ProviderOrderMapping]:
        stmt = select(ProviderOrderMapping).where(
            ProviderOrderMapping.payment_session_id == payment_session_id
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_order(
        self, db: AsyncSession, provider_order_id: str
    ) -> Optional[ProviderOrderMapping]:
        stmt = select(ProviderOrderMapping).where(
            ProviderOrderMapping.provider_order_id == provider_order_id
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(
        self,
        db: AsyncSession,
        payment_session_id: str,
        provider_id: str,
        provider_order_id: str,
        amount: int,
        currency_code: str,
        created_at: datetime,
    ) -> bool:
        """
        Store a mapping unless the session already has one.

        Returns:
            bool: True if this call inserted the row
        """
        stmt = (
            _insert(db, ProviderOrderMapping)
            .values(
                payment_session_id=payment_session_id,
                provider_id=provider_id,
                provider_order_id=provider_order_id,
                amount=amount,
                currency_code=currency_code,
                attempt_count=1,
                created_at=created_at,
            )
            .on_conflict_do_nothing(index_elements=["payment_session_id"])
            .returning(ProviderOrderMapping.payment_session_id)
        )
        result = await db.execute(stmt)
        return result.first() is not None


class PaymentSessionRepository:
    """Payment session rows."""

    async def get(
        self, db: AsyncSession, payment_session_id: str, for_update: bool = False
    ) -> Optional[PaymentSession]:
        stmt = select(PaymentSession).where(PaymentSession.id == payment_session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(
        self,
        db: AsyncSession,
        payment_session_id: str,
        provider_id: str,
        amount: int,
        currency_code: str,
        correlation_id: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Create a PENDING session unless one already exists.

        Returns:
            bool: True if this call created the session
        """
        stmt = (
            _insert(db, PaymentSession)
            .values(
                id=payment_session_id,
                provider_id=provider_id,
                status=PaymentStatus.PENDING.value,
                amount=amount,
                currency_code=currency_code,
                data={},
                correlation_id=correlation_id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["id"])
            .returning(PaymentSession.id)
        )
        result = await db.execute(stmt)
        return result.first() is not None

    async def apply_update(
        self,
        db: AsyncSession,
        session: PaymentSession,
        now: datetime,
        status: Optional[PaymentStatus] = None,
        data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentSession:
        """
        Merge ``data`` into the session blob and optionally change its status.

        The blob is replaced rather than mutated in place so the ORM detects
        the change.
        """
        if data:
            session.data = {**(session.data or {}), **data}
        if status is not None:
            session.status = status.value
        if correlation_id:
            session.correlation_id = correlation_id
        session.updated_at = now
        await db.flush()
        return session

    async def count_in_statuses(
        self, db: AsyncSession, statuses: Sequence[PaymentStatus]
    ) -> int:
        stmt = select(func.count()).select_from(PaymentSession).where(
            PaymentSession.status.in_([status.value for status in statuses])
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    async def list_stale(
        self,
        db: AsyncSession,
        statuses: Sequence[PaymentStatus],
        updated_before: datetime,
        limit: int,
    ) -> List[PaymentSession]:
        """Sessions in ``statuses`` not updated since ``updated_before``, oldest first."""
        stmt = (
            select(PaymentSession)
            .where(
                PaymentSession.status.in_([status.value for status in statuses]),
                PaymentSession.updated_at < updated_before,
            )
            .order_by(PaymentSession.updated_at.asc(), PaymentSession.id.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
