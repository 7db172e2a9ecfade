"""
Canonical payment event shapes.

A webhook delivery or a status poll is normalized into a ``PaymentEvent``
before it can touch a session. Events are ephemeral; only their effects on
the session are persisted.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from payment_orchestrator.core.state_machine import PaymentStatus


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class PaymentEvent(BaseModel):
    """Provider-agnostic event derived from a webhook or status poll."""

    model_config = ConfigDict(frozen=True)

    provider: str
    event_id: str
    event_type: str
    provider_payment_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    status: PaymentStatus
    raw_status: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    payload_sanitized: Dict[str, Any] = Field(default_factory=dict)


class MappedWebhookEvent(BaseModel):
    """Result of mapping a raw webhook body."""

    model_config = ConfigDict(frozen=True)

    payment_event: PaymentEvent
    payment_session_id: Optional[str] = None


class SignatureVerification(BaseModel):
    """Outcome of a webhook signature check."""

    model_config = ConfigDict(frozen=True)

    verified: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class ProviderStatusSnapshot(BaseModel):
    """Status reported by a provider's status endpoint."""

    model_config = ConfigDict(frozen=True)

    status: Optional[PaymentStatus] = None
    raw_status: Optional[str] = None
    provider_payment_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
