"""
Pytest configuration and fixtures.

Tests run against a file-backed SQLite database through aiosqlite. Every
transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers serialize
instead of failing with "database is locked" on upgrade. A process-local
keyed lock stands in for the PostgreSQL advisory lock.
"""
import asyncio
import hashlib
import hmac
import json
import re
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_orchestrator.config import Settings
from payment_orchestrator.container import Services, build_services
from payment_orchestrator.core.gateway import UpstreamCallGateway
from payment_orchestrator.database.connection import (
    create_engine,
    create_session_factory,
    init_db,
)
from payment_orchestrator.database.locks import KeyedLock
from payment_orchestrator.database.repositories import PaymentSessionRepository
from payment_orchestrator.integrations.razorpay_client import RazorpayClient

WEBHOOK_SECRET = "whsec_test_fake_secret"
KEY_ID = "rzp_test_fake_key"
KEY_SECRET = "fake_key_secret_for_testing"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "race: concurrency and idempotency tests")
    config.addinivalue_line("markers", "integration: end-to-end flows through the database")


async def no_sleep(seconds: float) -> None:
    """Backoff sleep replacement; yields control without waiting."""
    await asyncio.sleep(0)


class InProcessKeyedLock(KeyedLock):
    """asyncio.Lock per key, holding a transactional session like AdvisoryLock."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[AsyncSession]:
        async with self._locks[key]:
            async with self.session_factory() as db:
                async with db.begin():
                    yield db


class RazorpayStub:
    """
    In-memory Razorpay API served through ``httpx.MockTransport``.

    ``fail_next`` queues error responses for an endpoint (method, path)
    before the stub answers normally.
    """

    def __init__(self) -> None:
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.failures: Dict[Tuple[str, str], List[Tuple[int, Dict[str, Any]]]] = defaultdict(list)
        self._order_seq = 0

    @property
    def create_order_calls(self) -> int:
        return sum(
            1 for r in self.requests if r.method == "POST" and r.url.path == "/v1/orders"
        )

    def fail_next(
        self, method: str, path: str, status: int, times: int = 1, body: Optional[Dict[str, Any]] = None
    ) -> None:
        for _ in range(times):
            self.failures[(method, path)].append(
                (status, body or {"error": {"code": "SERVER_ERROR", "description": "stub failure"}})
            )

    def add_payment(self, payment_id: str, order_id: str, status: str, amount: int = 1499) -> None:
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "status": status,
            "amount": amount,
            "currency": "INR",
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # Let concurrent callers interleave around the upstream call.
        await asyncio.sleep(0)

        path = request.url.path
        queued = self.failures.get((request.method, path))
        if queued:
            status, body = queued.pop(0)
            return httpx.Response(status, json=body)

        body = json.loads(request.content) if request.content else {}

        if request.method == "POST" and path == "/v1/orders":
            self._order_seq += 1
            order = {
                "id": f"order_{self._order_seq}",
                "entity": "order",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "notes": body.get("notes", {}),
                "status": "created",
            }
            self.orders[order["id"]] = order
            return httpx.Response(200, json=order)

        match = re.fullmatch(r"/v1/orders/([^/]+)/payments", path)
        if request.method == "GET" and match:
            items = [p for p in self.payments.values() if p["order_id"] == match.group(1)]
            return httpx.Response(200, json={"entity": "collection", "count": len(items), "items": items})

        match = re.fullmatch(r"/v1/payments/([^/]+)(/capture|/refund)?", path)
        if match:
            payment = self.payments.get(match.group(1))
            if payment is None:
                return httpx.Response(
                    404, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "not found"}}
                )
            action = match.group(2)
            if action == "/capture":
                payment["status"] = "captured"
                return httpx.Response(200, json=payment)
            if action == "/refund":
                payment["status"] = "refunded"
                refund = {
                    "id": f"rfnd_{payment['id']}",
                    "entity": "refund",
                    "amount": body.get("amount", payment["amount"]),
                    "status": "processed",
                }
                return httpx.Response(200, json=refund)
            return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"error": {"code": "NOT_FOUND"}})


def sign_webhook(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def razorpay_webhook(
    event_type: str,
    payment_id: str = "pay_1",
    order_id: str = "order_1",
    status: str = "captured",
    session_id: Optional[str] = "ps_1",
) -> Dict[str, Any]:
    notes = {"session_id": session_id} if session_id else {}
    return {
        "entity": "event",
        "event": event_type,
        "created_at": 1700000000,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "status": status,
                    "amount": 1499,
                    "currency": "INR",
                    "email": "buyer@example.com",
                    "notes": notes,
                }
            }
        },
    }


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        app_name="payment-orchestrator-test",
        app_env="test",
        log_level="DEBUG",
        log_json=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        payments_enabled=True,
        payment_provider_default="razorpay",
        allow_unverified_webhooks=False,
        payments_mode="test",
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test database engine with tables."""
    engine = create_engine(test_settings)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def keyed_lock(session_factory: async_sessionmaker[AsyncSession]) -> InProcessKeyedLock:
    return InProcessKeyedLock(session_factory)


@pytest.fixture
def razorpay_stub() -> RazorpayStub:
    return RazorpayStub()


@pytest_asyncio.fixture
async def razorpay_client(razorpay_stub: RazorpayStub) -> AsyncGenerator[RazorpayClient, Any]:
    client = RazorpayClient(KEY_ID, KEY_SECRET, transport=razorpay_stub.transport())
    yield client
    await client.aclose()


def build_test_services(
    settings: Settings,
    engine: AsyncEngine,
    keyed_lock: KeyedLock,
    razorpay_client: RazorpayClient,
) -> Services:
    return build_services(
        settings,
        engine=engine,
        lock=keyed_lock,
        razorpay_client=razorpay_client,
        razorpay_gateway=UpstreamCallGateway.from_settings("razorpay", settings, sleep=no_sleep),
    )


@pytest.fixture
def services(
    test_settings: Settings,
    engine: AsyncEngine,
    keyed_lock: InProcessKeyedLock,
    razorpay_client: RazorpayClient,
) -> Services:
    """Fully wired components on the test database and Razorpay stub."""
    return build_test_services(test_settings, engine, keyed_lock, razorpay_client)


@pytest.fixture
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture
def key_secret() -> str:
    return KEY_SECRET


async def deliver_webhook(
    pipeline: Any,
    body: Dict[str, Any],
    event_id: Optional[str] = "evt_1",
    signature: Optional[str] = None,
    provider: str = "razorpay",
) -> Any:
    """Sign and deliver a Razorpay webhook body through ``pipeline``."""
    raw = json.dumps(body).encode()
    headers = {"x-razorpay-signature": signature if signature is not None else sign_webhook(raw)}
    if event_id:
        headers["x-razorpay-event-id"] = event_id
    return await pipeline.process_webhook(provider, raw, headers, body, "cid-webhook")


async def load_session(services: Services, session_id: str = "ps_1") -> Any:
    async with services.session_factory() as db:
        return await PaymentSessionRepository().get(db, session_id)
