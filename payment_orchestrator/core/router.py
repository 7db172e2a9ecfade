"""
Provider router.

Resolves which adapter owns the default checkout or an existing session.
Sessions keep the provider they were created with, so changing the default
provider never moves an in-flight session to a different adapter.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import PaymentValidationError, ProviderUnavailableError
from payment_orchestrator.core.provider_ids import provider_id_candidates
from payment_orchestrator.core.providers.base import PaymentProvider
from payment_orchestrator.database.repositories import PaymentSessionRepository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderSelection:
    """Resolved provider for a call."""

    provider_id: str
    provider: PaymentProvider
    requested_id: str
    source: str  # default, session, explicit


class PaymentProviderRouter:
    """Maps provider ids (default or stored on a session) to adapters."""

    def __init__(
        self,
        settings: Settings,
        providers: Iterable[PaymentProvider],
        session_factory: async_sessionmaker[AsyncSession],
        sessions: Optional[PaymentSessionRepository] = None,
    ):
        """
        Initialize router.

        Args:
            settings: Application settings (kill switch and default provider)
            providers: Registered provider adapters
            session_factory: Factory for database sessions
            sessions: Payment session repository
        """
        self.settings = settings
        self.providers: Dict[str, PaymentProvider] = {
            provider.provider_id: provider for provider in providers
        }
        self.session_factory = session_factory
        self.sessions = sessions or PaymentSessionRepository()

    def _ensure_enabled(self, correlation_id: Optional[str]) -> None:
        if not self.settings.payments_enabled:
            raise ProviderUnavailableError(
                "Payments are disabled",
                details={"payments_enabled": False},
                correlation_id=correlation_id,
            )

    def resolve_provider_id(self, provider_id: str) -> Optional[str]:
        """Return the registered id matching ``provider_id`` or one of its shorter forms."""
        for candidate in provider_id_candidates(provider_id):
            if candidate in self.providers:
                return candidate
        return None

    def _select(
        self, requested_id: str, source: str, correlation_id: Optional[str]
    ) -> ProviderSelection:
        resolved = self.resolve_provider_id(requested_id)
        if resolved is None:
            raise ProviderUnavailableError(
                f"Payment provider not available for id: {requested_id}",
                details={"provider_id": requested_id},
                correlation_id=correlation_id,
            )
        logger.info(
            "PAYMENT_PROVIDER_SELECTED",
            provider_id=resolved,
            requested_id=requested_id,
            source=source,
            correlation_id=correlation_id,
        )
        return ProviderSelection(resolved, self.providers[resolved], requested_id, source)

    def get_default_provider(self, correlation_id: Optional[str] = None) -> ProviderSelection:
        """
        Select the configured default provider.

        Raises:
            ProviderUnavailableError: If payments are disabled or the default is unknown
        """
        self._ensure_enabled(correlation_id)
        return self._select(self.settings.payment_provider_default, "default", correlation_id)

    def get_provider_by_id(
        self,
        provider_id: str,
        correlation_id: Optional[str] = None,
        require_enabled: bool = True,
    ) -> ProviderSelection:
        """
        Select a provider by explicit id.

        Background healing of existing sessions passes ``require_enabled=False``
        so the kill switch only blocks new payment activity.
        """
        if require_enabled:
            self._ensure_enabled(correlation_id)
        return self._select(provider_id, "explicit", correlation_id)

    async def get_provider_for_payment_session(
        self,
        payment_session_id: str,
        correlation_id: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> ProviderSelection:
        """
        Select the provider stored on a session.

        Args:
            payment_session_id: Payment session id
            correlation_id: Correlation id for logs and errors
            db: Optional database session to reuse

        Raises:
            PaymentValidationError: If the session id is empty or unknown
            ProviderUnavailableError: If payments are disabled or the stored id is unresolvable
        """
        if not (payment_session_id or "").strip():
            raise PaymentValidationError(
                "Payment session id is required", correlation_id=correlation_id
            )
        self._ensure_enabled(correlation_id)

        if db is None:
            async with self.session_factory() as own_db:
                session = await self.sessions.get(own_db, payment_session_id)
        else:
            session = await self.sessions.get(db, payment_session_id)

        if session is None:
            raise PaymentValidationError(
                f"Payment session not found: {payment_session_id}",
                details={"payment_session_id": payment_session_id},
                correlation_id=correlation_id,
            )
        if not session.provider_id:
            raise ProviderUnavailableError(
                "Payment session has no provider",
                details={"payment_session_id": payment_session_id},
                correlation_id=correlation_id,
            )
        return self._select(session.provider_id, "session", correlation_id)
