"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Fake collaborators (Mercado Pago, email, Redis)
- Test data factories (orders, carts, queue events)
"""
# Settings are read at import time; development allows localhost webhooks
import os
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("MERCADOPAGO_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("MERCADOPAGO_ACCESS_TOKEN", "test-access-token")

from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.exceptions import ServiceTimeoutError
from app.db.database import Base, get_db
from app.db.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    ProductVariation,
    WebhookQueueEvent,
    WebhookQueueStatus,
)
from app.domain.services.order_repository import OrderRepository
from app.domain.services.queue_processor import WebhookQueueProcessor
from app.domain.services.webhook_queue_service import WebhookQueueService
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_WEBHOOK_SECRET = "test-webhook-secret"
TEST_QUEUE_TOKEN = "queue-token"
TEST_RECONCILIATION_TOKEN = "reconcile-token"
TEST_STATUS_TOKEN = "status-token"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def webhook_settings():
    """Known secrets and tokens for every test"""
    with patch.object(settings, "MERCADOPAGO_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET), \
         patch.object(settings, "WEBHOOK_QUEUE_PROCESSOR_TOKEN", TEST_QUEUE_TOKEN), \
         patch.object(settings, "WEBHOOK_RECONCILIATION_TOKEN", TEST_RECONCILIATION_TOKEN), \
         patch.object(settings, "WEBHOOK_STATUS_TOKEN", TEST_STATUS_TOKEN), \
         patch.object(settings, "WEBHOOK_SKIP_IP_VALIDATION", False), \
         patch.object(settings, "WEBHOOK_SKIP_SIGNATURE_VALIDATION", False), \
         patch.object(settings, "WEBHOOK_QUEUE_MAX_RETRIES", 5):
        yield


# ============================================================================
# Fake collaborators
# ============================================================================

class FakePaymentClient:
    """
    Stand-in for MercadoPagoClient.

    ``responses[payment_id]`` is a list consumed one call at a time; each
    entry is a payment dict or an exception to raise. The last entry repeats.
    """

    def __init__(self) -> None:
        self.responses: dict[str, list] = {}
        self.calls: list[str] = []

    def set_payment(self, payment_id: str, *responses) -> None:
        self.responses[payment_id] = list(responses)

    async def get_payment(self, payment_id: str) -> dict:
        self.calls.append(payment_id)
        queue = self.responses.get(payment_id)
        if not queue:
            raise ServiceTimeoutError("mercadopago", 5.0)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmailDispatcher:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.error: Exception | None = None

    async def send_order_confirmation_email(self, order_id: str) -> bool:
        if self.error is not None:
            raise self.error
        self.sent.append(order_id)
        return True


@pytest.fixture
def payment_client() -> FakePaymentClient:
    return FakePaymentClient()


@pytest.fixture
def email_dispatcher() -> FakeEmailDispatcher:
    return FakeEmailDispatcher()


@pytest.fixture
def queue_service(db_session: AsyncSession) -> WebhookQueueService:
    return WebhookQueueService(db_session)


@pytest.fixture
def processor(
    db_session: AsyncSession,
    payment_client: FakePaymentClient,
    email_dispatcher: FakeEmailDispatcher,
    queue_service: WebhookQueueService,
) -> WebhookQueueProcessor:
    return WebhookQueueProcessor(
        db=db_session,
        repository=OrderRepository(db_session),
        payment_client=payment_client,
        email_dispatcher=email_dispatcher,
        queue_service=queue_service,
    )


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, processor: WebhookQueueProcessor):
    """Create test client with database and processor overrides"""
    from httpx import AsyncClient, ASGITransport
    from app.api.webhooks.mercadopago import get_processor

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor] = lambda: processor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def order_factory(db_session: AsyncSession):
    """
    Create an order with one item per ``items`` entry
    (stock, quantity, unit_price) and a cart holding the same lines.
    """
    async def _create_order(
        status: OrderStatus = OrderStatus.PENDING,
        payment_id: str | None = None,
        customer_email: str = "buyer@example.com",
        items: list[tuple[int, int, str]] | None = None,
        with_cart: bool = True,
    ) -> dict:
        items = items if items is not None else [(10, 2, "1500.00")]

        cart_id = None
        if with_cart:
            cart = Cart(total_amount=Decimal("0"))
            db_session.add(cart)
            await db_session.flush()
            cart_id = cart.id

        order = Order(
            status=status,
            payment_id=payment_id,
            cart_id=cart_id,
            customer_email=customer_email,
            customer_name="Test Buyer",
            order_number="ORD-0001",
            total_amount=sum(Decimal(price) * qty for _, qty, price in items),
        )
        db_session.add(order)
        await db_session.flush()

        variation_ids = []
        for index, (stock, quantity, price) in enumerate(items):
            variation = ProductVariation(name=f"Variation {index}", price=Decimal(price), stock=stock)
            db_session.add(variation)
            await db_session.flush()
            variation_ids.append(variation.id)
            db_session.add(
                OrderItem(
                    order_id=order.id,
                    variation_id=variation.id,
                    product_name=f"Product {index}",
                    quantity=quantity,
                    unit_price=Decimal(price),
                )
            )
            if cart_id:
                db_session.add(
                    CartItem(
                        cart_id=cart_id,
                        variation_id=variation.id,
                        quantity=quantity,
                        price_at_addition=Decimal(price),
                    )
                )

        await db_session.commit()
        return {
            "order_id": order.id,
            "cart_id": cart_id,
            "variation_ids": variation_ids,
        }

    return _create_order


@pytest.fixture
def queue_event_factory(db_session: AsyncSession):
    """Insert a queue row directly, bypassing the enqueuer"""
    async def _create_event(
        payment_id: str = "PAY-1",
        webhook_data: dict | None = None,
        status: WebhookQueueStatus = WebhookQueueStatus.PENDING,
        retry_count: int = 0,
        max_retries: int = 5,
        **kwargs,
    ) -> int:
        event = WebhookQueueEvent(
            payment_id=payment_id,
            event_type="payment",
            webhook_data=webhook_data if webhook_data is not None else {"id": payment_id, "type": "payment"},
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
            **kwargs,
        )
        db_session.add(event)
        await db_session.commit()
        return event.id

    return _create_event


def approved_payment(order_id: str, payment_id: str = "PAY-1", status: str = "approved") -> dict:
    return {
        "id": payment_id,
        "status": status,
        "status_detail": "accredited" if status == "approved" else status,
        "external_reference": f"buyer@example.com|{order_id}",
    }


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory Redis replacement with the subset of commands the app uses."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def incr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        if key in self._store:
            self._ttls[key] = ttl

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake
