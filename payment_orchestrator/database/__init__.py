"""Database package for the payment orchestrator."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .locks import AdvisoryLock, KeyedLock
from .models import Base, PaymentSession, PaymentWebhookEvent, ProviderOrderMapping
from .repositories import (
    PaymentSessionRepository,
    ProviderOrderMappingRepository,
    WebhookEventRepository,
)

__all__ = [
    "AdvisoryLock",
    "Base",
    "KeyedLock",
    "PaymentSession",
    "PaymentSessionRepository",
    "PaymentWebhookEvent",
    "ProviderOrderMapping",
    "ProviderOrderMappingRepository",
    "WebhookEventRepository",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
]
