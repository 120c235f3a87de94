"""
Async Postgres: orders (+ order_items, payments) with an optimistic version column, the services catalog,
and the notifications table the worker writes into.
An order save is one transaction: a version-guarded UPDATE (or INSERT for new orders) plus the payment upsert.
"""
import json
from datetime import datetime

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from laundry.config import settings
from laundry.errors import NotFoundError, VersionConflictError
from laundry.models import Order, Service

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
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
            CREATE TABLE IF NOT EXISTS services (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                base_price NUMERIC(12, 2) NOT NULL CHECK (base_price >= 0),
                unit VARCHAR(50),
                description TEXT
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                customer_id INT NOT NULL,
                status VARCHAR(50) NOT NULL,
                pickup_method VARCHAR(20) NOT NULL,
                fulfillment_method VARCHAR(20) NOT NULL DEFAULT 'UNSET',
                price_total NUMERIC(12, 2) NOT NULL,
                delivery_fee_paid BOOLEAN NOT NULL DEFAULT FALSE,
                notes TEXT,
                version INT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_items (
                order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id),
                position INT NOT NULL,
                service_id INT NOT NULL,
                quantity INT NOT NULL CHECK (quantity >= 1),
                unit_price NUMERIC(12, 2) NOT NULL CHECK (unit_price >= 0),
                PRIMARY KEY (order_id, position)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                payment_id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id),
                method VARCHAR(20),
                status VARCHAR(20) NOT NULL,
                amount NUMERIC(12, 2) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                paid_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                notification_id VARCHAR(64) PRIMARY KEY,
                user_id INT NOT NULL,
                type VARCHAR(50) NOT NULL,
                order_id VARCHAR(64) NOT NULL,
                payload JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                read_at TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id);
        """)


async def seed_services(pool: asyncpg.Pool, services: list[Service]) -> int:
    """Insert `services` only when the catalog is empty. Returns number of rows inserted."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            count = await conn.fetchval("SELECT COUNT(*) FROM services;")
            if count:
                return 0
            await conn.executemany(
                "INSERT INTO services (id, name, base_price) VALUES ($1, $2, $3);",
                [(s.id, s.name, s.unit_price) for s in services],
            )
            await conn.execute("SELECT setval('services_id_seq', (SELECT MAX(id) FROM services));")
    return len(services)


def _order_from_rows(row: asyncpg.Record, items: list[asyncpg.Record], payment: asyncpg.Record | None) -> Order:
    return Order.model_validate({
        "id": row["order_id"],
        "customer_id": row["customer_id"],
        "status": row["status"],
        "pickup_method": row["pickup_method"],
        "fulfillment_method": row["fulfillment_method"],
        "price_total": row["price_total"],
        "delivery_fee_paid": row["delivery_fee_paid"],
        "notes": row["notes"],
        "version": row["version"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "items": [
            {"service_id": i["service_id"], "quantity": i["quantity"], "unit_price": i["unit_price"]}
            for i in items
        ],
        "payment": None if payment is None else {
            "id": payment["payment_id"],
            "method": payment["method"],
            "status": payment["status"],
            "amount": payment["amount"],
            "created_at": payment["created_at"],
            "paid_at": payment["paid_at"],
        },
    })


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def load(self, order_id: str) -> Order:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT order_id, customer_id, status, pickup_method, fulfillment_method, price_total,
                       delivery_fee_paid, notes, version, created_at, updated_at
                FROM orders WHERE order_id = $1;
                """,
                order_id,
            )
            if row is None:
                raise NotFoundError("order", order_id)
            items = await conn.fetch(
                "SELECT service_id, quantity, unit_price FROM order_items WHERE order_id = $1 ORDER BY position;",
                order_id,
            )
            payment = await conn.fetchrow(
                """
                SELECT payment_id, method, status, amount, created_at, paid_at
                FROM payments WHERE order_id = $1 ORDER BY created_at DESC LIMIT 1;
                """,
                order_id,
            )
        return _order_from_rows(row, items, payment)

    async def save(self, order: Order, expected_version: int) -> Order:
        new_version = expected_version + 1
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                if expected_version == 0:
                    await self._insert(conn, order, new_version)
                else:
                    result = await conn.execute(
                        """
                        UPDATE orders
                        SET status = $3, fulfillment_method = $4, price_total = $5, delivery_fee_paid = $6,
                            notes = $7, updated_at = $8, version = $9
                        WHERE order_id = $1 AND version = $2;
                        """,
                        order.id,
                        expected_version,
                        order.status.value,
                        order.fulfillment_method.value,
                        order.price_total,
                        order.delivery_fee_paid,
                        order.notes,
                        order.updated_at,
                        new_version,
                    )
                    if result != "UPDATE 1":
                        raise VersionConflictError(order.id, expected_version)
                if order.payment is not None:
                    p = order.payment
                    await conn.execute(
                        """
                        INSERT INTO payments (payment_id, order_id, method, status, amount, created_at, paid_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (payment_id) DO UPDATE
                        SET method = EXCLUDED.method, status = EXCLUDED.status, paid_at = EXCLUDED.paid_at;
                        """,
                        p.id,
                        order.id,
                        p.method.value if p.method else None,
                        p.status.value,
                        p.amount,
                        p.created_at,
                        p.paid_at,
                    )
        return order.model_copy(update={"version": new_version})

    @staticmethod
    async def _insert(conn: asyncpg.Connection, order: Order, version: int) -> None:
        try:
            await conn.execute(
                """
                INSERT INTO orders (order_id, customer_id, status, pickup_method, fulfillment_method, price_total,
                                    delivery_fee_paid, notes, version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);
                """,
                order.id,
                order.customer_id,
                order.status.value,
                order.pickup_method.value,
                order.fulfillment_method.value,
                order.price_total,
                order.delivery_fee_paid,
                order.notes,
                version,
                order.created_at,
                order.updated_at,
            )
        except UniqueViolationError:
            raise VersionConflictError(order.id, 0)
        await conn.executemany(
            """
            INSERT INTO order_items (order_id, position, service_id, quantity, unit_price)
            VALUES ($1, $2, $3, $4, $5);
            """,
            [(order.id, pos, i.service_id, i.quantity, i.unit_price) for pos, i in enumerate(order.items)],
        )


class PostgresServiceCatalog:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def get_service(self, service_id: int) -> Service:
        if not isinstance(service_id, int):
            raise NotFoundError("service", service_id)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT id, name, base_price FROM services WHERE id = $1;", service_id)
        if row is None:
            raise NotFoundError("service", service_id)
        return Service(id=row["id"], name=row["name"], unit_price=row["base_price"])


async def insert_notification(
    pool: asyncpg.Pool,
    notification_id: str,
    user_id: int,
    type: str,
    order_id: str,
    payload: dict,
    created_at: datetime,
) -> bool:
    """Persist one notification. Returns False if notification_id was already stored (redelivery)."""
    async with pool.acquire() as conn:
        try:
            await conn.execute(
                """
                INSERT INTO notifications (notification_id, user_id, type, order_id, payload, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6);
                """,
                notification_id,
                user_id,
                type,
                order_id,
                json.dumps(payload or {}),
                created_at,
            )
        except UniqueViolationError:
            return False
    return True
