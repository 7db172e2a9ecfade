"""SQLAlchemy database models for the payment orchestrator."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payment_orchestrator.core.state_machine import PaymentStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in PaymentStatus)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentSession(Base):
    """
    Payment sessions table.

    One row per checkout attempt. Rows are never deleted; a session ends in a
    terminal canonical status instead.
    """

    __tablename__ = "payment_sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_sessions_positive_amount"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="payment_sessions_valid_status"),
        CheckConstraint("length(currency_code) = 3", name="payment_sessions_valid_currency"),
        Index("idx_payment_sessions_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentSession."""
        return (
            f"<PaymentSession(id={self.id}, provider={self.provider_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class ProviderOrderMapping(Base):
    """
    Upstream order per payment session.

    Written once per session under the session lock; unique on both sides so
    a session can never be bound to two upstream orders.
    """

    __tablename__ = "provider_order_mappings"

    payment_session_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_order_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        """String representation of ProviderOrderMapping."""
        return (
            f"<ProviderOrderMapping(session={self.payment_session_id}, "
            f"order={self.provider_order_id}, amount={self.amount})>"
        )


class PaymentWebhookEvent(Base):
    """
    Processed webhook deliveries.

    The unique (provider, event_id) key is the webhook dedupe guarantee.
    Rows are never updated.
    """

    __tablename__ = "payment_webhook_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_webhook_events_provider_event"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentWebhookEvent."""
        return f"<PaymentWebhookEvent(provider={self.provider}, event_id={self.event_id})>"
