"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class InitiatePaymentRequest(BaseModel):
    """Request schema for initiating a payment."""

    amount: int = Field(..., gt=0, description="Amount in minor units (e.g. paise)")
    currency_code: str = Field(..., min_length=3, max_length=3, description="ISO 4217 code")

    @field_validator("currency_code")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency code."""
        return v.upper()

    model_config = {
        "json_schema_extra": {"examples": [{"amount": 1499, "currency_code": "INR"}]}
    }


class AuthorizePaymentRequest(BaseModel):
    """Checkout callback fields returned by the provider's client SDK."""

    razorpay_order_id: Optional[str] = Field(default=None, description="Razorpay order id")
    razorpay_payment_id: Optional[str] = Field(default=None, description="Razorpay payment id")
    razorpay_signature: Optional[str] = Field(default=None, description="Checkout signature")


class RefundPaymentRequest(BaseModel):
    """Request schema for refunds."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Amount to refund (defaults to full amount)"
    )


class PaymentSessionResponse(BaseModel):
    """Session state after a payment operation."""

    payment_session_id: str = Field(..., description="Payment session id")
    provider_id: str = Field(..., description="Provider bound to the session")
    status: str = Field(..., description="Canonical payment status")
    changed: bool = Field(..., description="Whether this call changed the status")
    data: Dict[str, Any] = Field(default_factory=dict, description="Provider data")
    correlation_id: Optional[str] = Field(default=None, description="Correlation id")


class PaymentStatusResponse(BaseModel):
    """Stored status of a session."""

    payment_session_id: str
    status: str


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries."""

    ok: bool = Field(..., description="Delivery accepted")
    processed: bool = Field(..., description="Business effects applied by this delivery")
    deduped: bool = Field(..., description="Delivery was a duplicate")
    provider: str = Field(..., description="Resolved provider id")
    event_id: str = Field(..., description="Provider event id")
    event_type: str = Field(..., description="Provider event type")
    payment_session_id: Optional[str] = Field(default=None, description="Target session")
    correlation_id: str = Field(..., description="Correlation id")


class ReconciliationRequest(BaseModel):
    """Optional overrides for a manual reconciliation run."""

    stuck_minutes: Optional[int] = Field(default=None, gt=0)
    max_sessions: Optional[int] = Field(default=None, gt=0)


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation runs."""

    scanned: int
    candidates: int
    reconciled: int
    skipped: int
    failed: int
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    correlation_id: Optional[str] = None


class ErrorBody(BaseModel):
    """Error details."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error envelope."""

    error: ErrorBody
