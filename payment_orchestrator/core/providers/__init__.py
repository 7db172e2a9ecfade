"""Payment provider adapters."""
from .base import PaymentContext, PaymentProvider, ProviderCapabilities, ProviderResult
from .cod import CashOnDeliveryProvider
from .razorpay import RazorpayProvider

__all__ = [
    "CashOnDeliveryProvider",
    "PaymentContext",
    "PaymentProvider",
    "ProviderCapabilities",
    "ProviderResult",
    "RazorpayProvider",
]
