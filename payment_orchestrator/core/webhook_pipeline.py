"""
Webhook processing pipeline.

Implements, for one inbound delivery:
- Provider resolution and signature verification (with an explicit,
  audited override for unverified deliveries)
- Mapping into a canonical payment event
- Dedupe on (provider, event_id) before any state mutation
- Noop-on-invalid transition so stale deliveries never regress a session
- Persistence of the new status and provider refs

Dedupe, session load and update share one transaction: a delivery that
fails after dedupe is rolled back and can be retried by the provider.
"""
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import (
    PaymentErrorCode,
    PaymentProviderError,
    PaymentValidationError,
    ProviderUnavailableError,
    SignatureInvalidError,
)
from payment_orchestrator.core.events import SignatureVerification, utcnow
from payment_orchestrator.core.idempotency import IdempotencyStore
from payment_orchestrator.core.state_machine import log_state_change, transition
from payment_orchestrator.core.webhook_registry import (
    VerificationFailure,
    WebhookProvider,
    WebhookProviderRegistry,
)
from payment_orchestrator.database.repositories import PaymentSessionRepository
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of one webhook delivery."""

    provider: str
    event_id: str
    event_type: str
    processed: bool
    deduped: bool
    matched: bool
    changed: bool
    payment_session_id: Optional[str]
    correlation_id: str
    verified: bool = True

    def to_response(self) -> Dict[str, Any]:
        """HTTP response body for the webhook route."""
        return {
            "ok": True,
            "processed": self.processed,
            "deduped": self.deduped,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payment_session_id": self.payment_session_id,
            "correlation_id": self.correlation_id,
        }

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WebhookPipeline:
    """Orchestrates verify, map, dedupe, transition and persist."""

    def __init__(
        self,
        settings: Settings,
        registry: WebhookProviderRegistry,
        idempotency: IdempotencyStore,
        session_factory: async_sessionmaker[AsyncSession],
        sessions: Optional[PaymentSessionRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize webhook pipeline.

        Args:
            settings: Application settings (unverified-webhook override)
            registry: Webhook provider registry
            idempotency: Idempotency store used for dedupe and order lookup
            session_factory: Factory for database sessions
            sessions: Payment session repository
            clock: Source of the current time
        """
        self.settings = settings
        self.registry = registry
        self.idempotency = idempotency
        self.session_factory = session_factory
        self.sessions = sessions or PaymentSessionRepository()
        self.clock = clock

    @property
    def allow_unverified(self) -> bool:
        return self.settings.allow_unverified_webhooks

    async def process_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        correlation_id: Optional[str] = None,
    ) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            provider: Provider id from the route
            raw_body: Exact request bytes (signed payload)
            headers: Request headers
            body: Parsed JSON body
            correlation_id: Correlation id; generated when absent

        Returns:
            WebhookResult: Processing outcome (also for deduped deliveries)

        Raises:
            PaymentProviderError: On unknown provider, failed verification,
                unmappable event or unknown session
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        started = time.perf_counter()
        provider_key = (provider or "").strip().lower()
        metric_label = "unknown"

        try:
            if not provider_key:
                raise PaymentValidationError(
                    "Webhook provider is required", correlation_id=correlation_id
                )

            definition = self.registry.resolve(provider_key)
            if definition is None:
                raise ProviderUnavailableError(
                    f"Unknown webhook provider: {provider_key}",
                    http_status=404,
                    details={"provider": provider_key},
                    correlation_id=correlation_id,
                )
            metric_label = definition.provider_id

            logger.info(
                "PAYMENT_WEBHOOK_RECEIVED",
                provider=definition.provider_id,
                body_bytes=len(raw_body),
                correlation_id=correlation_id,
            )

            verification = definition.verify_signature(raw_body, headers, self.settings)
            if not verification.verified:
                self._handle_unverified(definition, verification, correlation_id)

            result = await self._apply(definition, raw_body, headers, body, verification, correlation_id)
        except PaymentProviderError as exc:
            exc.with_correlation_id(correlation_id)
            outcome = (
                "rejected"
                if exc.code == PaymentErrorCode.SIGNATURE_INVALID.value
                else "failed"
            )
            metrics.record_webhook(metric_label, outcome, time.perf_counter() - started)
            raise

        metrics.record_webhook(
            metric_label,
            "deduped" if result.deduped else "processed",
            time.perf_counter() - started,
        )
        return result

    def _handle_unverified(
        self,
        definition: WebhookProvider,
        verification: SignatureVerification,
        correlation_id: str,
    ) -> None:
        if self.allow_unverified:
            logger.warning(
                "PAYMENT_WEBHOOK_UNVERIFIED_ALLOWED",
                provider=definition.provider_id,
                reason=verification.reason,
                correlation_id=correlation_id,
            )
            return

        logger.warning(
            "PAYMENT_WEBHOOK_SIGNATURE_REJECTED",
            provider=definition.provider_id,
            reason=verification.reason,
            correlation_id=correlation_id,
        )
        details = {"provider": definition.provider_id, "reason": verification.reason}
        message = verification.message or "Webhook signature verification failed"
        if verification.reason == VerificationFailure.MISSING_WEBHOOK_SECRET.value:
            raise ProviderUnavailableError(
                message, http_status=500, details=details, correlation_id=correlation_id
            )
        raise SignatureInvalidError(message, details=details, correlation_id=correlation_id)

    async def _apply(
        self,
        definition: WebhookProvider,
        raw_body: bytes,
        headers: Mapping[str, str],
        body: Mapping[str, Any],
        verification: SignatureVerification,
        correlation_id: str,
    ) -> WebhookResult:
        mapped = definition.map_event(body, raw_body, headers)
        event = mapped.payment_event

        async with self.session_factory() as db:
            async with db.begin():
                dedupe = await self.idempotency.mark_processed(
                    db, definition.provider_id, event.event_id
                )
                if dedupe.already_processed:
                    logger.info(
                        "PAYMENT_WEBHOOK_DEDUPED",
                        provider=definition.provider_id,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        correlation_id=correlation_id,
                    )
                    return WebhookResult(
                        provider=definition.provider_id,
                        event_id=event.event_id,
                        event_type=event.event_type,
                        processed=False,
                        deduped=True,
                        matched=False,
                        changed=False,
                        payment_session_id=mapped.payment_session_id,
                        correlation_id=correlation_id,
                        verified=verification.verified,
                    )

                payment_session_id = mapped.payment_session_id
                if not payment_session_id and event.provider_order_id:
                    payment_session_id = await self.idempotency.find_session_for_order(
                        db, event.provider_order_id
                    )
                if not payment_session_id:
                    raise PaymentValidationError(
                        "Webhook does not reference a payment session",
                        details={
                            "event_type": event.event_type,
                            "provider_order_id": event.provider_order_id,
                        },
                        correlation_id=correlation_id,
                    )

                session = await self.sessions.get(db, payment_session_id, for_update=True)
                if session is None:
                    raise PaymentValidationError(
                        f"Payment session not found: {payment_session_id}",
                        details={"payment_session_id": payment_session_id},
                        correlation_id=correlation_id,
                    )

                outcome = transition(
                    session.status, event.status, correlation_id, on_invalid="noop"
                )
                if outcome.valid and outcome.changed:
                    now = self.clock()
                    refs = {
                        "provider": definition.provider_id,
                        "provider_event_id": event.event_id,
                        "provider_event_type": event.event_type,
                        "provider_payment_id": event.provider_payment_id,
                        "provider_order_id": event.provider_order_id,
                        **definition.to_provider_refs(event),
                        "payment_status": outcome.to_status.value,
                        "webhook_received_at": now.isoformat(),
                        "webhook_verified": verification.verified,
                    }
                    await self.sessions.apply_update(
                        db,
                        session,
                        now,
                        status=outcome.to_status,
                        data={key: value for key, value in refs.items() if value is not None},
                        correlation_id=correlation_id,
                    )
                    log_state_change(
                        outcome, session.id, session.provider_id, "webhook", correlation_id
                    )
                    metrics.record_state_transition(
                        outcome.from_status.value, outcome.to_status.value, "webhook"
                    )

        logger.info(
            "PAYMENT_WEBHOOK_PROCESSED",
            provider=definition.provider_id,
            event_id=event.event_id,
            event_type=event.event_type,
            payment_session_id=payment_session_id,
            changed=outcome.changed,
            valid=outcome.valid,
            verified=verification.verified,
            payload=event.payload_sanitized,
            correlation_id=correlation_id,
        )
        return WebhookResult(
            provider=definition.provider_id,
            event_id=event.event_id,
            event_type=event.event_type,
            processed=True,
            deduped=False,
            matched=True,
            changed=outcome.changed,
            payment_session_id=payment_session_id,
            correlation_id=correlation_id,
            verified=verification.verified,
        )
