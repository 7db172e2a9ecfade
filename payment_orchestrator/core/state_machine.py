"""
Canonical payment status state machine.

Pure functions only; no I/O. Every adapter maps its provider-specific
statuses into ``PaymentStatus`` and every mutation of a session's status goes
through ``transition``.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Literal, Optional, Union

import structlog

from payment_orchestrator.core.errors import PaymentValidationError, StateTransitionError

logger = structlog.get_logger(__name__)

OnInvalid = Literal["throw", "noop"]


class PaymentStatus(str, Enum):
    """Provider-agnostic payment status."""

    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.AUTHORIZED: frozenset(
        {PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.CAPTURED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Sessions in these states are waiting on the provider and may be stuck.
AWAITING_PROVIDER_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.AUTHORIZED}
)

_ALIASES = {"CANCELED": PaymentStatus.CANCELLED}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a requested status transition."""

    from_status: PaymentStatus
    to_status: PaymentStatus
    changed: bool
    idempotent: bool
    valid: bool


def normalize_status(value: Union[str, PaymentStatus]) -> PaymentStatus:
    """
    Normalize a status string into a canonical status.

    Args:
        value: Canonical status or its name in any case ("CANCELED" accepted)

    Returns:
        PaymentStatus: Canonical status

    Raises:
        PaymentValidationError: If the value is not a known status
    """
    if isinstance(value, PaymentStatus):
        return value
    normalized = str(value or "").strip().upper()
    if normalized in _ALIASES:
        return _ALIASES[normalized]
    try:
        return PaymentStatus(normalized)
    except ValueError:
        raise PaymentValidationError(
            f"Unknown payment status: {value}",
            details={"status": value},
        )


def is_terminal(status: Union[str, PaymentStatus]) -> bool:
    """Check whether a status has no outbound transitions."""
    return not ALLOWED_TRANSITIONS[normalize_status(status)]


def can_transition(
    current: Union[str, PaymentStatus], next_status: Union[str, PaymentStatus]
) -> bool:
    """Check whether moving from ``current`` to ``next_status`` is legal."""
    source = normalize_status(current)
    target = normalize_status(next_status)
    return source == target or target in ALLOWED_TRANSITIONS[source]


def transition(
    current: Union[str, PaymentStatus],
    next_status: Union[str, PaymentStatus],
    correlation_id: Optional[str] = None,
    on_invalid: OnInvalid = "throw",
) -> TransitionResult:
    """
    Compute a status transition.

    Same-state requests are valid and idempotent. Illegal edges either raise
    (``on_invalid="throw"``) or leave the status untouched
    (``on_invalid="noop"``), which is how stale webhook deliveries and status
    polls are absorbed.

    Args:
        current: Current canonical status
        next_status: Requested canonical status
        correlation_id: Correlation id carried by a raised error
        on_invalid: Failure policy for illegal edges

    Returns:
        TransitionResult: Transition outcome

    Raises:
        StateTransitionError: On an illegal edge with ``on_invalid="throw"``
    """
    source = normalize_status(current)
    target = normalize_status(next_status)

    if source == target:
        return TransitionResult(source, target, changed=False, idempotent=True, valid=True)

    if target in ALLOWED_TRANSITIONS[source]:
        return TransitionResult(source, target, changed=True, idempotent=False, valid=True)

    if on_invalid == "noop":
        logger.info(
            "PAYMENT_STATE_TRANSITION_IGNORED",
            from_status=source.value,
            to_status=target.value,
            correlation_id=correlation_id,
        )
        return TransitionResult(source, source, changed=False, idempotent=False, valid=False)

    raise StateTransitionError(
        f"Invalid payment status transition: {source.value} -> {target.value}",
        details={"from": source.value, "to": target.value},
        correlation_id=correlation_id,
    )


def log_state_change(
    result: TransitionResult,
    payment_session_id: str,
    provider_id: str,
    source: str,
    correlation_id: Optional[str],
) -> None:
    """Emit the audit record for an applied transition."""
    logger.info(
        "PAYMENT_STATE_CHANGE",
        payment_session_id=payment_session_id,
        provider_id=provider_id,
        from_status=result.from_status.value,
        to_status=result.to_status.value,
        source=source,
        correlation_id=correlation_id,
    )
