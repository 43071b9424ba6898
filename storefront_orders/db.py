"""
Async Postgres order store. Each order is one JSONB document plus the columns
the sweeper and dashboard filter on. Writes are conditional on the version the
caller loaded, so two concurrent transitions cannot both land.
"""
import json
from datetime import datetime

import asyncpg

from storefront_orders.config import settings
from storefront_orders.models import Order, ReturnStatus
from storefront_orders.store import ConflictError, OrderNotFoundError

_pool: asyncpg.Pool | None = None


async def get_pool(dsn: str | None = None) -> asyncpg.Pool:
    """Shared pool, created on first call from dsn (default: settings.database_url)."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            dsn or settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                user_id VARCHAR(255) NOT NULL,
                version INT NOT NULL DEFAULT 1,
                doc JSONB NOT NULL,
                is_paid BOOLEAN NOT NULL DEFAULT FALSE,
                is_cancelled BOOLEAN NOT NULL DEFAULT FALSE,
                return_status VARCHAR(20),
                refund_credited BOOLEAN NOT NULL DEFAULT FALSE,
                returned_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_unpaid
            ON orders(created_at) WHERE is_paid = FALSE AND is_cancelled = FALSE;
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_refund_due
            ON orders(returned_at) WHERE return_status = 'Approved' AND refund_credited = FALSE;
        """)


def _row_to_order(row: asyncpg.Record) -> Order:
    doc = row["doc"]
    if isinstance(doc, str):
        doc = json.loads(doc)
    doc["version"] = row["version"]
    return Order.model_validate(doc)


def _columns(order: Order) -> tuple:
    return (
        order.user.id,
        json.dumps(order.to_document()),
        order.is_paid,
        order.is_cancelled,
        order.return_status.value if order.return_status else None,
        order.refund_credited,
        order.returned_at,
        order.updated_at,
    )


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create(self, order: Order) -> Order:
        order = order.model_copy(update={"version": 1})
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO orders (user_id, doc, is_paid, is_cancelled, return_status,
                                    refund_credited, returned_at, updated_at, id, version, created_at)
                VALUES ($1, $2::jsonb, $3, $4, $5, $6, $7, $8, $9, 1, $10);
                """,
                *_columns(order),
                order.id,
                order.created_at,
            )
        return order

    async def load(self, order_id: str) -> Order:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT doc, version FROM orders WHERE id = $1;",
                order_id,
            )
        if row is None:
            raise OrderNotFoundError(order_id)
        return _row_to_order(row)

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE orders
                    SET user_id = $1, doc = $2::jsonb, is_paid = $3, is_cancelled = $4,
                        return_status = $5, refund_credited = $6, returned_at = $7,
                        updated_at = $8, version = version + 1
                    WHERE id = $9 AND version = $10
                    RETURNING doc, version;
                    """,
                    *_columns(order),
                    order.id,
                    expected_version,
                )
                if row is None:
                    exists = await conn.fetchval("SELECT 1 FROM orders WHERE id = $1;", order.id)
                    if exists is None:
                        raise OrderNotFoundError(order.id)
                    raise ConflictError(order.id, expected_version)
        return _row_to_order(row)

    async def delete(self, order_id: str) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM orders WHERE id = $1;", order_id)
        if result == "DELETE 0":
            raise OrderNotFoundError(order_id)

    async def list_all(self) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT doc, version FROM orders ORDER BY created_at DESC;")
        return [_row_to_order(r) for r in rows]

    async def list_for_user(self, user_id: str) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT doc, version FROM orders WHERE user_id = $1 ORDER BY created_at DESC;",
                user_id,
            )
        return [_row_to_order(r) for r in rows]

    async def find_unpaid_created_before(self, cutoff: datetime) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT doc, version FROM orders
                WHERE is_paid = FALSE AND is_cancelled = FALSE AND created_at <= $1
                ORDER BY created_at ASC;
                """,
                cutoff,
            )
        return [_row_to_order(r) for r in rows]

    async def find_refunds_due(self, cutoff: datetime) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT doc, version FROM orders
                WHERE return_status = $1 AND refund_credited = FALSE AND returned_at <= $2
                ORDER BY returned_at ASC;
                """,
                ReturnStatus.APPROVED.value,
                cutoff,
            )
        return [_row_to_order(r) for r in rows]

    async def summary(self) -> dict:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    COUNT(*) AS orders,
                    COALESCE(SUM((doc->>'totalPrice')::numeric), 0) AS orders_revenue,
                    COUNT(*) FILTER (WHERE is_paid) AS paid,
                    COALESCE(SUM((doc->>'totalPrice')::numeric) FILTER (WHERE is_paid), 0) AS paid_revenue,
                    COUNT(*) FILTER (WHERE NOT is_paid) AS unpaid,
                    COALESCE(SUM((doc->>'totalPrice')::numeric) FILTER (WHERE NOT is_paid), 0) AS unpaid_revenue,
                    COUNT(*) FILTER (WHERE is_cancelled) AS cancelled,
                    COALESCE(SUM((doc->>'totalPrice')::numeric) FILTER (WHERE is_cancelled), 0) AS cancelled_revenue,
                    COUNT(*) FILTER (WHERE (doc->>'isDelivered')::boolean) AS delivered,
                    COALESCE(SUM((doc->>'totalPrice')::numeric)
                        FILTER (WHERE (doc->>'isDelivered')::boolean), 0) AS delivered_revenue,
                    COUNT(*) FILTER (WHERE (doc->>'returnRequested')::boolean) AS return_requested,
                    COALESCE(SUM((doc->>'totalPrice')::numeric)
                        FILTER (WHERE (doc->>'returnRequested')::boolean), 0) AS return_requested_revenue,
                    COUNT(*) FILTER (WHERE refund_credited) AS refund_credited,
                    COALESCE(SUM((doc->>'totalPrice')::numeric) FILTER (WHERE refund_credited), 0)
                        AS refund_credited_revenue
                FROM orders;
            """)

        def bucket(name: str) -> dict:
            return {"count": row[name], "revenue": round(float(row[f"{name}_revenue"]), 2)}

        return {
            "orders": bucket("orders"),
            "paid": bucket("paid"),
            "unpaid": bucket("unpaid"),
            "cancelled": bucket("cancelled"),
            "delivered": bucket("delivered"),
            "returnRequested": bucket("return_requested"),
            "refundCredited": bucket("refund_credited"),
        }
