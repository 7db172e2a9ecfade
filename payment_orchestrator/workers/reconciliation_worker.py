"""
Reconciliation background worker.

Runs a reconciliation pass every ``reconciliation_interval_minutes``.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional, Sequence

import structlog

from payment_orchestrator.config import Settings, get_settings
from payment_orchestrator.container import Services, build_services
from payment_orchestrator.core.reconciliation import ReconcileResult
from payment_orchestrator.database.connection import init_db
from payment_orchestrator.monitoring.logging import setup_logging
from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Upper bound on one sleep so shutdown signals are noticed promptly.
MAX_SLEEP_SECONDS = 60.0


async def run_reconciliation_once(services: Services) -> Optional[ReconcileResult]:
    """
    Run one reconciliation pass.

    A failed run is logged and recorded; it never stops the worker.

    Returns:
        Optional[ReconcileResult]: Run counters, or None if the run failed
    """
    logger.info("scheduled_reconciliation_started")

    try:
        result = await services.reconciliation.reconcile()
    except Exception as e:
        logger.error(
            "scheduled_reconciliation_failed", error=str(e), error_type=type(e).__name__
        )
        metrics.record_reconciliation_run("failed", 0, 0, 0.0)
        return None

    logger.info("scheduled_reconciliation_completed", **result.as_dict())
    if result.failed:
        logger.warning(
            "reconciliation_failures_detected",
            failed=result.failed,
            payment_session_ids=[f.get("payment_session_id") for f in result.failures],
        )
    return result


async def start_reconciliation_worker(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
    once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        services: Pre-built components (built from settings when omitted)
        once: Run a single pass and exit
    """
    settings = settings or get_settings()
    owns_services = services is None
    if services is None:
        services = build_services(settings)
        await init_db(services.engine)

    interval_seconds = settings.reconciliation_interval_minutes * 60
    logger.info(
        "reconciliation_worker_starting",
        interval_minutes=settings.reconciliation_interval_minutes,
        stuck_minutes=settings.reconciliation_stuck_minutes,
        max_sessions=settings.reconciliation_max_sessions,
        once=once,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    if not once:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await run_reconciliation_once(services)
            if once:
                break

            seconds_until = float(interval_seconds)
            while seconds_until > 0 and running:
                sleep_time = min(seconds_until, MAX_SLEEP_SECONDS)
                await asyncio.sleep(sleep_time)
                seconds_until -= sleep_time
    finally:
        if owns_services:
            await services.aclose()
        logger.info("reconciliation_worker_stopped")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Console entry point."""
    parser = argparse.ArgumentParser(description="Payment reconciliation worker")
    parser.add_argument(
        "--once", action="store_true", help="Run a single reconciliation pass and exit"
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)
    asyncio.run(start_reconciliation_worker(settings, once=args.once))


if __name__ == "__main__":
    main()
