"""Core orchestration logic: state machine, webhooks, idempotency, routing."""
from .errors import PaymentErrorCode, PaymentProviderError
from .state_machine import PaymentStatus, can_transition, transition

__all__ = [
    "PaymentErrorCode",
    "PaymentProviderError",
    "PaymentStatus",
    "can_transition",
    "transition",
]
