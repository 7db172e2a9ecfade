"""
Payment service for caller-initiated operations.

Orchestrates the checkout flow:
1. Validate input
2. Create the session bound to the default provider (first call only)
3. Route to the provider bound to the session
4. Call the adapter (upstream calls go through the gateway)
5. Apply the strict canonical transition
6. Persist status and provider data
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.core.errors import PaymentValidationError
from payment_orchestrator.core.events import utcnow
from payment_orchestrator.core.providers.base import (
    PaymentContext,
    PaymentProvider,
    ProviderResult,
)
from payment_orchestrator.core.router import PaymentProviderRouter
from payment_orchestrator.core.state_machine import (
    PaymentStatus,
    log_state_change,
    normalize_status,
    transition,
)
from payment_orchestrator.database.models import PaymentSession
from payment_orchestrator.database.repositories import PaymentSessionRepository
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentOperationResult:
    """Session state after a payment operation."""

    payment_session_id: str
    provider_id: str
    status: PaymentStatus
    changed: bool
    data: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None


class PaymentService:
    """
    Checkout-facing payment operations.

    Handles the session lifecycle with provider routing, strict state
    transitions and persistence of provider data.
    """

    def __init__(
        self,
        router: PaymentProviderRouter,
        session_factory: async_sessionmaker[AsyncSession],
        sessions: Optional[PaymentSessionRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize payment service.

        Args:
            router: Provider router
            session_factory: Factory for database sessions
            sessions: Payment session repository
            clock: Source of the current time
        """
        self.router = router
        self.session_factory = session_factory
        self.sessions = sessions or PaymentSessionRepository()
        self.clock = clock

    @staticmethod
    def _validate_initiate(
        payment_session_id: str,
        amount: int,
        currency_code: str,
        correlation_id: Optional[str],
    ) -> None:
        """
        Validate initiate parameters.

        Raises:
            PaymentValidationError: If validation fails
        """
        if not (payment_session_id or "").strip():
            raise PaymentValidationError(
                "Payment session id is required", correlation_id=correlation_id
            )
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise PaymentValidationError(
                "Amount must be a positive integer in minor units",
                details={"amount": amount},
                correlation_id=correlation_id,
            )
        if len(currency_code or "") != 3:
            raise PaymentValidationError(
                "Currency must be a 3-letter ISO 4217 code",
                details={"currency_code": currency_code},
                correlation_id=correlation_id,
            )

    async def _load(
        self,
        db: AsyncSession,
        payment_session_id: str,
        correlation_id: Optional[str],
        for_update: bool = False,
    ) -> PaymentSession:
        session = await self.sessions.get(db, payment_session_id, for_update=for_update)
        if session is None:
            raise PaymentValidationError(
                f"Payment session not found: {payment_session_id}",
                details={"payment_session_id": payment_session_id},
                correlation_id=correlation_id,
            )
        return session

    @staticmethod
    def _context(session: PaymentSession, correlation_id: Optional[str]) -> PaymentContext:
        return PaymentContext(
            payment_session_id=session.id,
            amount=session.amount,
            currency_code=session.currency_code,
            status=normalize_status(session.status),
            data=dict(session.data or {}),
            correlation_id=correlation_id,
        )

    async def _persist(
        self,
        payment_session_id: str,
        provider_id: str,
        result: ProviderResult,
        operation: str,
        correlation_id: Optional[str],
        amount: Optional[int] = None,
        currency_code: Optional[str] = None,
    ) -> PaymentOperationResult:
        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                session = await self._load(
                    db, payment_session_id, correlation_id, for_update=True
                )
                outcome = transition(
                    session.status, result.status, correlation_id, on_invalid="throw"
                )
                if amount is not None:
                    session.amount = amount
                if currency_code is not None:
                    session.currency_code = currency_code
                data = {key: value for key, value in result.data.items() if value is not None}
                data["payment_status"] = outcome.to_status.value
                await self.sessions.apply_update(
                    db,
                    session,
                    now,
                    status=outcome.to_status,
                    data=data,
                    correlation_id=correlation_id,
                )
                session_data = dict(session.data)

        if outcome.changed:
            log_state_change(outcome, payment_session_id, provider_id, operation, correlation_id)
            metrics.record_state_transition(
                outcome.from_status.value, outcome.to_status.value, operation
            )
        return PaymentOperationResult(
            payment_session_id=payment_session_id,
            provider_id=provider_id,
            status=outcome.to_status,
            changed=outcome.changed,
            data=session_data,
            correlation_id=correlation_id,
        )

    async def initiate_payment(
        self,
        payment_session_id: str,
        amount: int,
        currency_code: str,
        correlation_id: Optional[str] = None,
    ) -> PaymentOperationResult:
        """
        Start (or resume) a payment for a session.

        The first call creates the session bound to the default provider;
        later calls keep using that provider.

        Args:
            payment_session_id: Payment session id
            amount: Amount in minor units
            currency_code: ISO 4217 currency code
            correlation_id: Correlation id for logs and errors

        Returns:
            PaymentOperationResult: Session state after initiation

        Raises:
            PaymentValidationError: If input validation fails
            AmountImmutableError: If amount or currency changed after order creation
            StateTransitionError: If the session is no longer pending
        """
        self._validate_initiate(payment_session_id, amount, currency_code, correlation_id)
        currency_code = currency_code.upper()

        async with self.session_factory() as db:
            async with db.begin():
                existing = await self.sessions.get(db, payment_session_id)
                if existing is None:
                    selection = self.router.get_default_provider(correlation_id)
                    created = await self.sessions.insert_if_absent(
                        db,
                        payment_session_id,
                        selection.provider_id,
                        amount,
                        currency_code,
                        correlation_id,
                        self.clock(),
                    )
                    if created:
                        logger.info(
                            "payment_session_created",
                            payment_session_id=payment_session_id,
                            provider_id=selection.provider_id,
                            amount=amount,
                            currency_code=currency_code,
                            correlation_id=correlation_id,
                        )
                elif existing.status != PaymentStatus.PENDING.value:
                    transition(existing.status, PaymentStatus.PENDING, correlation_id)

        selection = await self.router.get_provider_for_payment_session(
            payment_session_id, correlation_id
        )
        ctx = PaymentContext(
            payment_session_id=payment_session_id,
            amount=amount,
            currency_code=currency_code,
            correlation_id=correlation_id,
        )
        async with self.session_factory() as db:
            session = await self.sessions.get(db, payment_session_id)
            if session is not None:
                ctx.status = normalize_status(session.status)
                ctx.data = dict(session.data or {})

        result = await selection.provider.initiate_payment(ctx)
        return await self._persist(
            payment_session_id,
            selection.provider_id,
            result,
            "initiate",
            correlation_id,
            amount=amount,
            currency_code=currency_code,
        )

    async def _run(
        self,
        payment_session_id: str,
        operation: str,
        target: PaymentStatus,
        correlation_id: Optional[str],
        call: Callable[[PaymentProvider, PaymentContext], Awaitable[ProviderResult]],
    ) -> PaymentOperationResult:
        selection = await self.router.get_provider_for_payment_session(
            payment_session_id, correlation_id
        )
        async with self.session_factory() as db:
            session = await self._load(db, payment_session_id, correlation_id)
            ctx = self._context(session, correlation_id)

        # Reject illegal edges before any upstream side effect.
        transition(ctx.status, target, correlation_id, on_invalid="throw")

        result = await call(selection.provider, ctx)
        return await self._persist(
            payment_session_id, selection.provider_id, result, operation, correlation_id
        )

    async def authorize_payment(
        self,
        payment_session_id: str,
        payload: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> PaymentOperationResult:
        """Confirm the customer's authorization (e.g. checkout callback fields)."""
        return await self._run(
            payment_session_id,
            "authorize",
            PaymentStatus.AUTHORIZED,
            correlation_id,
            lambda provider, ctx: provider.authorize_payment(ctx, payload),
        )

    async def capture_payment(
        self, payment_session_id: str, correlation_id: Optional[str] = None
    ) -> PaymentOperationResult:
        """Capture an authorized payment."""
        return await self._run(
            payment_session_id,
            "capture",
            PaymentStatus.CAPTURED,
            correlation_id,
            lambda provider, ctx: provider.capture_payment(ctx),
        )

    async def refund_payment(
        self,
        payment_session_id: str,
        amount: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentOperationResult:
        """Refund a captured payment."""
        return await self._run(
            payment_session_id,
            "refund",
            PaymentStatus.REFUNDED,
            correlation_id,
            lambda provider, ctx: provider.refund_payment(ctx, amount),
        )

    async def cancel_payment(
        self, payment_session_id: str, correlation_id: Optional[str] = None
    ) -> PaymentOperationResult:
        """Cancel an unpaid payment."""
        return await self._run(
            payment_session_id,
            "cancel",
            PaymentStatus.CANCELLED,
            correlation_id,
            lambda provider, ctx: provider.cancel_payment(ctx),
        )

    async def get_payment_status(
        self, payment_session_id: str, correlation_id: Optional[str] = None
    ) -> PaymentStatus:
        """Return the stored canonical status of a session."""
        async with self.session_factory() as db:
            session = await self._load(db, payment_session_id, correlation_id)
        return normalize_status(session.status)
