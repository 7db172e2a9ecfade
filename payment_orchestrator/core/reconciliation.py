"""
Reconciliation of stuck payment sessions.

Heals sessions whose webhook was lost or delayed by polling the bound
provider's status endpoint and applying the same noop-on-invalid transition
as the webhook pipeline.
"""
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import (
    PaymentProviderError,
    PaymentValidationError,
    ProviderUnavailableError,
)
from payment_orchestrator.core.events import utcnow
from payment_orchestrator.core.providers.base import PaymentContext
from payment_orchestrator.core.router import PaymentProviderRouter
from payment_orchestrator.core.state_machine import (
    AWAITING_PROVIDER_STATUSES,
    log_state_change,
    normalize_status,
    transition,
)
from payment_orchestrator.database.models import PaymentSession
from payment_orchestrator.database.repositories import PaymentSessionRepository
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stable scan order for the status filter.
_CANDIDATE_STATUSES = sorted(AWAITING_PROVIDER_STATUSES, key=lambda status: status.value)


@dataclass
class ReconcileResult:
    """Counters for one reconciliation run."""

    scanned: int = 0
    candidates: int = 0
    reconciled: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationEngine:
    """
    Polls upstream status for sessions stuck awaiting the provider.

    A session is a candidate when it is PENDING or AUTHORIZED and has not
    been updated for ``stuck_minutes``. Candidates whose poll fails are
    reported as provider-unavailable failures and left untouched.
    """

    def __init__(
        self,
        settings: Settings,
        router: PaymentProviderRouter,
        session_factory: async_sessionmaker[AsyncSession],
        sessions: Optional[PaymentSessionRepository] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize reconciliation engine.

        Args:
            settings: Application settings (default thresholds)
            router: Provider router
            session_factory: Factory for database sessions
            sessions: Payment session repository
            clock: Source of the current time
        """
        self.settings = settings
        self.router = router
        self.session_factory = session_factory
        self.sessions = sessions or PaymentSessionRepository()
        self.clock = clock

    async def reconcile(
        self,
        now: Optional[datetime] = None,
        stuck_minutes: Optional[int] = None,
        max_sessions: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Run one reconciliation pass.

        Args:
            now: Reference time (defaults to the clock)
            stuck_minutes: Age threshold (defaults to settings)
            max_sessions: Batch cap (defaults to settings)
            correlation_id: Correlation id for the run

        Returns:
            ReconcileResult: Run counters

        Raises:
            PaymentValidationError: If a threshold override is not positive
        """
        now = now or self.clock()
        if stuck_minutes is None:
            stuck_minutes = self.settings.reconciliation_stuck_minutes
        if max_sessions is None:
            max_sessions = self.settings.reconciliation_max_sessions
        correlation_id = correlation_id or f"reconcile_{uuid.uuid4().hex}"
        if stuck_minutes <= 0 or max_sessions <= 0:
            raise PaymentValidationError(
                "Reconciliation thresholds must be positive",
                details={"stuck_minutes": stuck_minutes, "max_sessions": max_sessions},
                correlation_id=correlation_id,
            )

        started = time.perf_counter()
        cutoff = now - timedelta(minutes=stuck_minutes)
        result = ReconcileResult()

        logger.info(
            "PAYMENT_RECONCILE_SCAN_STARTED",
            stuck_minutes=stuck_minutes,
            max_sessions=max_sessions,
            cutoff=cutoff.isoformat(),
            correlation_id=correlation_id,
        )

        try:
            async with self.session_factory() as db:
                result.scanned = await self.sessions.count_in_statuses(db, _CANDIDATE_STATUSES)
                candidates = await self.sessions.list_stale(
                    db, _CANDIDATE_STATUSES, cutoff, max_sessions
                )
            result.candidates = len(candidates)

            for candidate in candidates:
                try:
                    updated = await self._reconcile_session(candidate, now, correlation_id)
                except ProviderUnavailableError as exc:
                    result.failed += 1
                    result.failures.append(
                        {"payment_session_id": candidate.id, **exc.to_envelope()["error"]}
                    )
                    logger.error(
                        "PAYMENT_RECONCILE_SESSION_FAILED",
                        payment_session_id=candidate.id,
                        provider_id=candidate.provider_id,
                        error_code=exc.code,
                        details=exc.details,
                        correlation_id=correlation_id,
                    )
                    continue
                if updated:
                    result.reconciled += 1
                else:
                    result.skipped += 1
        except Exception as e:
            metrics.record_reconciliation_run(
                "failed", result.reconciled, result.skipped, time.perf_counter() - started
            )
            logger.error(
                "PAYMENT_RECONCILE_SCAN_FAILED",
                error=str(e),
                error_type=type(e).__name__,
                correlation_id=correlation_id,
            )
            raise

        duration = time.perf_counter() - started
        metrics.record_reconciliation_run(
            "completed", result.reconciled, result.skipped, duration
        )
        logger.info(
            "PAYMENT_RECONCILE_SCAN_COMPLETED",
            scanned=result.scanned,
            candidates=result.candidates,
            reconciled=result.reconciled,
            skipped=result.skipped,
            failed=result.failed,
            duration_seconds=round(duration, 3),
            correlation_id=correlation_id,
        )
        return result

    async def _poll(self, candidate: PaymentSession, correlation_id: str) -> Any:
        try:
            selection = self.router.get_provider_by_id(
                candidate.provider_id, correlation_id, require_enabled=False
            )
            ctx = PaymentContext(
                payment_session_id=candidate.id,
                amount=candidate.amount,
                currency_code=candidate.currency_code,
                status=normalize_status(candidate.status),
                data=dict(candidate.data or {}),
                correlation_id=correlation_id,
            )
            return await selection.provider.get_payment_status(ctx)
        except PaymentProviderError as exc:
            raise ProviderUnavailableError(
                "Payment status poll failed",
                details={
                    "payment_session_id": candidate.id,
                    "provider_id": candidate.provider_id,
                    "error": exc.code,
                },
                correlation_id=correlation_id,
            ) from exc
        except ValidationError as exc:
            raise ProviderUnavailableError(
                "Payment status poll returned a malformed snapshot",
                details={
                    "payment_session_id": candidate.id,
                    "provider_id": candidate.provider_id,
                    "error": PaymentValidationError.default_code.value,
                },
                correlation_id=correlation_id,
            ) from exc

    async def _reconcile_session(
        self, candidate: PaymentSession, now: datetime, correlation_id: str
    ) -> bool:
        """Poll and apply one candidate; returns True when the session changed."""
        snapshot = await self._poll(candidate, correlation_id)
        if snapshot.status is None:
            return False

        async with self.session_factory() as db:
            async with db.begin():
                # Re-read under a row lock; a webhook may have landed meanwhile.
                session = await self.sessions.get(db, candidate.id, for_update=True)
                if session is None:
                    return False

                outcome = transition(
                    session.status, snapshot.status, correlation_id, on_invalid="noop"
                )
                if not (outcome.valid and outcome.changed):
                    return False

                data = {key: value for key, value in snapshot.data.items() if value is not None}
                data["payment_status"] = outcome.to_status.value
                data["reconciled_at"] = now.isoformat()
                await self.sessions.apply_update(
                    db,
                    session,
                    now,
                    status=outcome.to_status,
                    data=data,
                    correlation_id=correlation_id,
                )

        log_state_change(outcome, candidate.id, candidate.provider_id, "reconciliation", correlation_id)
        metrics.record_state_transition(
            outcome.from_status.value, outcome.to_status.value, "reconciliation"
        )
        logger.info(
            "PAYMENT_RECONCILE_SESSION_UPDATED",
            payment_session_id=candidate.id,
            provider_id=candidate.provider_id,
            from_status=outcome.from_status.value,
            to_status=outcome.to_status.value,
            raw_status=snapshot.raw_status,
            correlation_id=correlation_id,
        )
        return True
