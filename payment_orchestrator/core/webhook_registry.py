"""
Webhook provider registry.

Implements:
- Per-provider signature verification over the exact raw body
- Mapping of provider envelopes into canonical payment events
- Provider-native reference fields for the session data blob
- Provider lookup tolerant of wrapped/prefixed ids
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog
from pydantic import ValidationError

from payment_orchestrator.config import Settings
from payment_orchestrator.core.errors import PaymentErrorCode, PaymentValidationError
from payment_orchestrator.core.events import (
    MappedWebhookEvent,
    PaymentEvent,
    SignatureVerification,
    utcnow,
)
from payment_orchestrator.core.provider_ids import provider_id_candidates
from payment_orchestrator.core.state_machine import PaymentStatus

logger = structlog.get_logger(__name__)


class VerificationFailure(str, Enum):
    """Reasons a webhook signature check can fail."""

    MISSING_WEBHOOK_SECRET = "missing_webhook_secret"
    MISSING_SIGNATURE_HEADER = "missing_signature_header"
    SIGNATURE_MISMATCH = "signature_mismatch"


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup returning a stripped value or None."""
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            value = (value or "").strip()
            return value or None
    return None


def _optional_str(value: Any) -> Optional[str]:
    """Stringify a scalar entity field; None and empty values stay None."""
    if value is None or value == "":
        return None
    if isinstance(value, (Mapping, list)):
        raise PaymentValidationError(
            "Razorpay webhook entity field must be a scalar",
            details={"value_type": type(value).__name__},
        )
    return str(value)


def body_hash_event_id(raw_body: bytes) -> str:
    """Derive a deterministic event id from the raw body."""
    return "hash_" + hashlib.sha256(raw_body).hexdigest()


class WebhookProvider(ABC):
    """Strategy object for one provider's webhook format."""

    provider_id: str

    @abstractmethod
    def verify_signature(
        self, raw_body: bytes, headers: Mapping[str, str], settings: Settings
    ) -> SignatureVerification:
        """Verify the delivery signature over ``raw_body``."""

    @abstractmethod
    def map_event(
        self, body: Mapping[str, Any], raw_body: bytes, headers: Mapping[str, str]
    ) -> MappedWebhookEvent:
        """Translate the provider envelope into a canonical event."""

    @abstractmethod
    def to_provider_refs(self, event: PaymentEvent) -> Dict[str, Any]:
        """Provider-native reference fields to merge into session data."""


class RazorpayWebhookProvider(WebhookProvider):
    """
    Razorpay webhook format.

    Signature: hex HMAC-SHA256 of the raw body with the webhook secret, sent in
    ``x-razorpay-signature``. Event id: ``x-razorpay-event-id`` header, or a
    hash of the raw body when the header is absent.
    """

    provider_id = "razorpay"
    signature_header = "x-razorpay-signature"
    event_id_header = "x-razorpay-event-id"

    EVENT_STATUS_MAP: Dict[str, PaymentStatus] = {
        "payment.authorized": PaymentStatus.AUTHORIZED,
        "payment.captured": PaymentStatus.CAPTURED,
        "payment.failed": PaymentStatus.FAILED,
        "order.paid": PaymentStatus.CAPTURED,
    }

    def verify_signature(
        self, raw_body: bytes, headers: Mapping[str, str], settings: Settings
    ) -> SignatureVerification:
        secret = (settings.razorpay_webhook_secret or "").strip()
        if not secret:
            return SignatureVerification(
                verified=False,
                reason=VerificationFailure.MISSING_WEBHOOK_SECRET.value,
                error_code=PaymentErrorCode.PROVIDER_UNAVAILABLE.value,
                message="Razorpay webhook secret is not configured",
            )

        signature = get_header(headers, self.signature_header)
        if not signature:
            return SignatureVerification(
                verified=False,
                reason=VerificationFailure.MISSING_SIGNATURE_HEADER.value,
                error_code=PaymentErrorCode.SIGNATURE_INVALID.value,
                message="Missing Razorpay webhook signature header",
            )

        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            return SignatureVerification(
                verified=False,
                reason=VerificationFailure.SIGNATURE_MISMATCH.value,
                error_code=PaymentErrorCode.SIGNATURE_INVALID.value,
                message="Razorpay webhook signature mismatch",
            )

        return SignatureVerification(verified=True)

    def map_event(
        self, body: Mapping[str, Any], raw_body: bytes, headers: Mapping[str, str]
    ) -> MappedWebhookEvent:
        if not isinstance(body, Mapping):
            raise PaymentValidationError("Razorpay webhook body must be a JSON object")

        event_type = str(body.get("event") or "").strip()
        status = self.EVENT_STATUS_MAP.get(event_type)
        if status is None:
            raise PaymentValidationError(
                f"Unsupported Razorpay webhook event: {event_type or '<missing>'}",
                details={"event_type": event_type},
            )

        payload = body.get("payload") or {}
        payment_wrapper = payload.get("payment") if isinstance(payload, Mapping) else None
        payment = payment_wrapper.get("entity") if isinstance(payment_wrapper, Mapping) else None
        if not isinstance(payment, Mapping) or not payment:
            raise PaymentValidationError(
                "Razorpay webhook payload has no payment entity",
                details={"event_type": event_type},
            )

        notes = payment.get("notes") or {}
        session_id = notes.get("session_id") if isinstance(notes, Mapping) else None
        event_id = get_header(headers, self.event_id_header) or body_hash_event_id(raw_body)
        payment_id = _optional_str(payment.get("id"))
        order_id = _optional_str(payment.get("order_id"))
        raw_status = _optional_str(payment.get("status"))

        try:
            event = PaymentEvent(
                provider=self.provider_id,
                event_id=event_id,
                event_type=event_type,
                provider_payment_id=payment_id,
                provider_order_id=order_id,
                status=status,
                raw_status=raw_status,
                occurred_at=self._occurred_at(body),
                payload_sanitized={
                    "event_type": event_type,
                    "event_id": event_id,
                    "provider_payment_id": payment_id,
                    "provider_order_id": order_id,
                    "mapped_status": status.value,
                    "raw_status": raw_status,
                },
            )
        except ValidationError as exc:
            raise PaymentValidationError(
                "Razorpay webhook payment entity is malformed",
                details={"event_type": event_type, "error_count": exc.error_count()},
            ) from exc
        return MappedWebhookEvent(
            payment_event=event,
            payment_session_id=str(session_id).strip() if session_id else None,
        )

    def to_provider_refs(self, event: PaymentEvent) -> Dict[str, Any]:
        return {
            "razorpay_payment_id": event.provider_payment_id,
            "razorpay_order_id": event.provider_order_id,
            "razorpay_payment_status": event.raw_status,
        }

    @staticmethod
    def _occurred_at(body: Mapping[str, Any]) -> datetime:
        created_at = body.get("created_at")
        if isinstance(created_at, (int, float)) and not isinstance(created_at, bool):
            return datetime.fromtimestamp(created_at, tz=timezone.utc)
        return utcnow()


class WebhookProviderRegistry:
    """Lookup of webhook providers by (possibly wrapped) provider id."""

    def __init__(self, providers: Iterable[WebhookProvider]):
        self._providers: Dict[str, WebhookProvider] = {
            provider.provider_id: provider for provider in providers
        }

    @property
    def provider_ids(self) -> list:
        return sorted(self._providers)

    def resolve(self, provider: str) -> Optional[WebhookProvider]:
        """
        Resolve a webhook provider.

        Exact candidate matches win; otherwise the first registered id that
        is a substring of a candidate is used.

        Args:
            provider: Provider id from the route or configuration

        Returns:
            Optional[WebhookProvider]: Matching provider or None
        """
        candidates = provider_id_candidates(provider)
        for candidate in candidates:
            if candidate in self._providers:
                return self._providers[candidate]

        for candidate in candidates:
            for key in sorted(self._providers):
                if key in candidate:
                    logger.debug(
                        "webhook_provider_resolved_by_substring",
                        requested=provider,
                        resolved=key,
                    )
                    return self._providers[key]
        return None
