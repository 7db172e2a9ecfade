"""Third-party payment provider integrations."""
from .razorpay_client import RazorpayClient

__all__ = ["RazorpayClient"]
