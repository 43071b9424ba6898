"""
Shared fixtures: in-memory order store, a controllable clock, a recording
notification publisher and a lifecycle engine wired from them.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeAsyncRedis

from storefront_orders.lifecycle import LifecycleEngine
from storefront_orders.models import Actor, ActorRole, Order, OrderDraft, UserRef
from storefront_orders.notifications import NotificationDispatcher, NotificationIntent
from storefront_orders.order_state import LifecyclePolicy
from storefront_orders.store import InMemoryOrderStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingPublisher:
    def __init__(self):
        self.intents: list[NotificationIntent] = []

    async def __call__(self, intent: NotificationIntent) -> None:
        self.intents.append(intent)

    @property
    def templates(self) -> list[str]:
        return [i.template.value for i in self.intents]


CUSTOMER = Actor(role=ActorRole.CUSTOMER, user_id="u-1", name="Asha Rao", email="asha@example.com")
OTHER_CUSTOMER = Actor(role=ActorRole.CUSTOMER, user_id="u-2", name="Ravi", email="ravi@example.com")
ADMIN = Actor(role=ActorRole.ADMIN, user_id="admin-1", name="Admin")


def make_draft(**overrides) -> OrderDraft:
    body = {
        "orderItems": [
            {"name": "Running Shoes", "slug": "running-shoes", "quantity": 2, "price": 500},
        ],
        "shippingAddress": {
            "fullName": "Asha Rao",
            "address": "12 MG Road",
            "city": "Pune",
            "postalCode": "411001",
            "country": "India",
        },
        "paymentMethod": "PayPal",
        "itemsPrice": 1000,
        "shippingPrice": 0,
        "taxPrice": 180,
        "totalPrice": 1180,
    }
    body.update(overrides)
    return OrderDraft.model_validate(body)


def make_order(created_at: datetime = T0, **state) -> Order:
    """An order owned by CUSTOMER in whatever state the keyword flags describe."""
    return Order(
        **make_draft().model_dump(),
        id="ord-1",
        user=UserRef(id=CUSTOMER.user_id, name=CUSTOMER.name, email=CUSTOMER.email),
        version=1,
        created_at=created_at,
        updated_at=created_at,
        **state,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> LifecyclePolicy:
    return LifecyclePolicy(
        unpaid_order_timeout=timedelta(minutes=15),
        refund_grace=timedelta(days=3),
    )


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def dispatcher(publisher) -> NotificationDispatcher:
    return NotificationDispatcher(publisher)


@pytest.fixture
def engine(store, dispatcher, policy, clock) -> LifecycleEngine:
    return LifecycleEngine(store, dispatcher, policy, max_attempts=3, clock=clock)


@pytest.fixture
def draft() -> OrderDraft:
    return make_draft()


@pytest.fixture
def fake_redis() -> FakeAsyncRedis:
    return FakeAsyncRedis(decode_responses=True)
