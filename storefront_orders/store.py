"""
Order store contract plus the in-process implementation used by tests and
single-process development. The Postgres implementation lives in db.py.
"""
import asyncio
from datetime import datetime
from typing import Protocol

from storefront_orders.models import Order, ReturnStatus


class OrderNotFoundError(Exception):
    """Raised when an order id does not resolve."""
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(order_id)


class ConflictError(Exception):
    """Raised when the stored version moved on since the order was loaded."""
    def __init__(self, order_id: str, expected_version: int | None = None):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(order_id)


class OrderStore(Protocol):
    async def create(self, order: Order) -> Order: ...

    async def load(self, order_id: str) -> Order: ...

    async def save(self, order: Order, expected_version: int) -> Order: ...

    async def delete(self, order_id: str) -> None: ...

    async def list_all(self) -> list[Order]: ...

    async def list_for_user(self, user_id: str) -> list[Order]: ...

    async def find_unpaid_created_before(self, cutoff: datetime) -> list[Order]: ...

    async def find_refunds_due(self, cutoff: datetime) -> list[Order]: ...

    async def summary(self) -> dict: ...


def summarize(orders: list[Order]) -> dict:
    """Dashboard counts and revenue per state."""
    def bucket(selected: list[Order]) -> dict:
        return {"count": len(selected), "revenue": round(sum(o.total_price for o in selected), 2)}

    return {
        "orders": bucket(orders),
        "paid": bucket([o for o in orders if o.is_paid]),
        "unpaid": bucket([o for o in orders if not o.is_paid]),
        "cancelled": bucket([o for o in orders if o.is_cancelled]),
        "delivered": bucket([o for o in orders if o.is_delivered]),
        "returnRequested": bucket([o for o in orders if o.return_requested]),
        "refundCredited": bucket([o for o in orders if o.refund_credited]),
    }


class InMemoryOrderStore:
    """Dict-backed store. save() is a compare-and-set on the order version."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            stored = order.model_copy(update={"version": 1}, deep=True)
            self._orders[order.id] = stored
            return stored.model_copy(deep=True)

    async def load(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order.model_copy(deep=True)

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            current = self._orders.get(order.id)
            if current is None:
                raise OrderNotFoundError(order.id)
            if current.version != expected_version:
                raise ConflictError(order.id, expected_version)
            stored = order.model_copy(update={"version": expected_version + 1}, deep=True)
            self._orders[order.id] = stored
            return stored.model_copy(deep=True)

    async def delete(self, order_id: str) -> None:
        async with self._lock:
            if self._orders.pop(order_id, None) is None:
                raise OrderNotFoundError(order_id)

    async def list_all(self) -> list[Order]:
        newest_first = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in newest_first]

    async def list_for_user(self, user_id: str) -> list[Order]:
        return [o for o in await self.list_all() if o.user.id == user_id]

    async def find_unpaid_created_before(self, cutoff: datetime) -> list[Order]:
        return [
            o.model_copy(deep=True) for o in self._orders.values()
            if not o.is_paid and not o.is_cancelled and o.created_at <= cutoff
        ]

    async def find_refunds_due(self, cutoff: datetime) -> list[Order]:
        return [
            o.model_copy(deep=True) for o in self._orders.values()
            if o.return_status == ReturnStatus.APPROVED
            and not o.refund_credited
            and o.returned_at is not None
            and o.returned_at <= cutoff
        ]

    async def summary(self) -> dict:
        return summarize(list(self._orders.values()))
