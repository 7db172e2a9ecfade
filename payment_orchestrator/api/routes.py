"""
API routes for the payment orchestrator.
"""
import json
from dataclasses import asdict
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_orchestrator.container import Services
from payment_orchestrator.core.errors import (
    PaymentErrorCode,
    PaymentProviderError,
    PaymentValidationError,
    to_error_envelope,
)
from payment_orchestrator.core.payment_service import PaymentOperationResult
from payment_orchestrator.monitoring.health import HealthCheck

from .schemas import (
    AuthorizePaymentRequest,
    ErrorResponse,
    InitiatePaymentRequest,
    PaymentSessionResponse,
    PaymentStatusResponse,
    ReconciliationRequest,
    ReconciliationResponse,
    RefundPaymentRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    "4XX": {"model": ErrorResponse},
    "5XX": {"model": ErrorResponse},
}


def get_services(request: Request) -> Services:
    """Dependency returning the wired components."""
    return request.app.state.services


def get_correlation_id(request: Request) -> str:
    """Dependency returning the request's correlation id."""
    return request.state.correlation_id


def _session_response(result: PaymentOperationResult) -> Dict[str, Any]:
    body = asdict(result)
    body["status"] = result.status.value
    return body


@webhook_router.post(
    "/payments/{provider}",
    response_model=WebhookResponse,
    responses=ERROR_RESPONSES,
    summary="Receive a provider webhook",
    description="Verify, dedupe and apply a payment provider webhook delivery",
)
async def payment_webhook(
    provider: str,
    request: Request,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> JSONResponse:
    """
    Handle a payment webhook.

    The raw body is read before parsing so the signature is checked over the
    exact bytes the provider signed. Duplicate deliveries return 200 with
    ``deduped=true``.
    """
    raw_body = await request.body()

    try:
        try:
            body = json.loads(raw_body or b"{}")
        except ValueError as e:
            raise PaymentValidationError(
                "Webhook body must be valid JSON", correlation_id=correlation_id
            ) from e
        if not isinstance(body, dict):
            raise PaymentValidationError(
                "Webhook body must be a JSON object", correlation_id=correlation_id
            )

        result = await services.pipeline.process_webhook(
            provider, raw_body, dict(request.headers), body, correlation_id
        )
    except Exception as exc:
        if not isinstance(exc, PaymentProviderError):
            logger.error(
                "payment_webhook_unhandled_error",
                provider=provider,
                error=str(exc),
                error_type=type(exc).__name__,
                correlation_id=correlation_id,
            )
        status_code, envelope = to_error_envelope(
            exc,
            correlation_id,
            fallback_code=PaymentErrorCode.PAYMENT_WEBHOOK_FAILED.value,
            fallback_message="Webhook processing failed",
            fallback_status=500,
        )
        return JSONResponse(status_code=status_code, content=envelope)

    return JSONResponse(status_code=200, content=result.to_response())


@payment_router.post(
    "/sessions/{payment_session_id}/initiate",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
    summary="Initiate a payment",
    description="Create the session (first call) and the upstream order, at most once",
)
async def initiate_payment(
    payment_session_id: str,
    request: InitiatePaymentRequest,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Initiate a payment; repeated calls return the same upstream order."""
    result = await services.payments.initiate_payment(
        payment_session_id, request.amount, request.currency_code, correlation_id
    )
    return _session_response(result)


@payment_router.post(
    "/sessions/{payment_session_id}/authorize",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
    summary="Authorize a payment",
)
async def authorize_payment(
    payment_session_id: str,
    request: AuthorizePaymentRequest,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Verify checkout callback fields and mark the session authorized."""
    result = await services.payments.authorize_payment(
        payment_session_id, request.model_dump(exclude_none=True), correlation_id
    )
    return _session_response(result)


@payment_router.post(
    "/sessions/{payment_session_id}/capture",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
    summary="Capture a payment",
)
async def capture_payment(
    payment_session_id: str,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Capture an authorized payment."""
    result = await services.payments.capture_payment(payment_session_id, correlation_id)
    return _session_response(result)


@payment_router.post(
    "/sessions/{payment_session_id}/refund",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
    summary="Refund a payment",
)
async def refund_payment(
    payment_session_id: str,
    request: RefundPaymentRequest,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Refund a captured payment."""
    result = await services.payments.refund_payment(
        payment_session_id, request.amount, correlation_id
    )
    return _session_response(result)


@payment_router.post(
    "/sessions/{payment_session_id}/cancel",
    response_model=PaymentSessionResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel a payment",
)
async def cancel_payment(
    payment_session_id: str,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Cancel an unpaid payment."""
    result = await services.payments.cancel_payment(payment_session_id, correlation_id)
    return _session_response(result)


@payment_router.get(
    "/sessions/{payment_session_id}",
    response_model=PaymentStatusResponse,
    responses=ERROR_RESPONSES,
    summary="Get payment status",
)
async def get_payment_status(
    payment_session_id: str,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Return the stored canonical status."""
    status = await services.payments.get_payment_status(payment_session_id, correlation_id)
    return {"payment_session_id": payment_session_id, "status": status.value}


@admin_router.post(
    "/payments/reconcile",
    response_model=ReconciliationResponse,
    responses=ERROR_RESPONSES,
    summary="Run reconciliation",
    description="Poll upstream status for stuck sessions and apply valid transitions",
)
async def run_reconciliation(
    request: ReconciliationRequest,
    services: Services = Depends(get_services),
    correlation_id: str = Depends(get_correlation_id),
) -> Dict[str, Any]:
    """Run one reconciliation pass."""
    result = await services.reconciliation.reconcile(
        stuck_minutes=request.stuck_minutes,
        max_sessions=request.max_sessions,
        correlation_id=correlation_id,
    )
    return {**result.as_dict(), "correlation_id": correlation_id}


@monitoring_router.get("/health", summary="Health check")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Overall health including dependencies."""
    return await HealthCheck(services.settings, services.session_factory).check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe."""
    return await HealthCheck(services.settings, services.session_factory).liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(services: Services = Depends(get_services)) -> JSONResponse:
    """Readiness probe; 503 when a dependency is unavailable."""
    result = await HealthCheck(services.settings, services.session_factory).readiness()
    return JSONResponse(status_code=200 if result["status"] == "healthy" else 503, content=result)


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
