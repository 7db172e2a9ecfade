"""
Razorpay REST API client.

Thin async HTTP wrapper: one method per endpoint, one request per call.
Retries and error classification belong to ``UpstreamCallGateway``; this
client only turns non-2xx responses and transport failures into
``UpstreamHTTPError``.
"""
from typing import Any, Dict, Optional

import httpx

from payment_orchestrator.core.gateway import UpstreamHTTPError


class RazorpayClient:
    """Async client for the Razorpay orders and payments API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Razorpay client.

        Args:
            key_id: API key id (rzp_test_... / rzp_live_...)
            key_secret: API key secret
            base_url: API base URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.key_id = key_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(key_id, key_secret),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as e:
            raise UpstreamHTTPError(None, message=f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise UpstreamHTTPError(response.status_code, body=self._parse_body(response))

        return self._parse_body(response)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"description": response.text[:200]} if response.text else {}
        return body if isinstance(body, dict) else {"items": body}

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Create an order (POST /v1/orders)."""
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        return await self._request("POST", "/v1/orders", json=payload)

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """Fetch a payment (GET /v1/payments/{id})."""
        return await self._request("GET", f"/v1/payments/{payment_id}")

    async def fetch_order_payments(self, order_id: str) -> Dict[str, Any]:
        """List payments made against an order (GET /v1/orders/{id}/payments)."""
        return await self._request("GET", f"/v1/orders/{order_id}/payments")

    async def capture_payment(self, payment_id: str, amount: int, currency: str) -> Dict[str, Any]:
        """Capture an authorized payment (POST /v1/payments/{id}/capture)."""
        return await self._request(
            "POST",
            f"/v1/payments/{payment_id}/capture",
            json={"amount": amount, "currency": currency},
        )

    async def refund_payment(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Refund a captured payment (POST /v1/payments/{id}/refund)."""
        payload: Dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            payload["amount"] = amount
        return await self._request("POST", f"/v1/payments/{payment_id}/refund", json=payload)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
