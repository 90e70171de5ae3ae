"""
Database Module
===============
Postgres persistence for the fulfillment pipeline.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Startup migrations (orders, leads, profiles)
- Order / Lead / Profile stores implementing the pipeline interfaces

The unique index on orders.stripe_payment_intent_id is the authoritative
idempotency guard for order creation.

pip install asyncpg
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from config import Settings
from pipeline.errors import DuplicateOrderError, OrderNotFoundError
from pipeline.stores import ILeadStore, IOrderStore, IProfileStore
from schemas.orders import Lead, Order, Profile

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False
    _settings: Optional[Settings] = None

    @classmethod
    async def initialize(cls, settings: Settings):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        cls._settings = settings
        try:
            cls._pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=settings.db_min_pool_size,
                max_size=settings.db_max_pool_size,
            )
            cls._initialized = True
            logger.info("Database connection pool initialized")

            # Run migrations on startup
            await cls._run_migrations()

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("Database connection pool closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            if cls._settings is None:
                raise RuntimeError("Database.initialize() has not been called")
            await cls.initialize(cls._settings)

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def ping(cls) -> bool:
        """Readiness probe"""
        if not cls._pool:
            return False
        try:
            return await cls.fetch_one("SELECT 1 AS ok") is not None
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("Database ping failed", error=str(e))
            return False

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            DO $$ BEGIN
                CREATE TYPE order_status AS ENUM
                    ('pending', 'processing', 'completed', 'failed', 'partial_delivery');
            EXCEPTION WHEN duplicate_object THEN NULL;
            END $$
            """,

            # Profiles table
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id UUID PRIMARY KEY,
                full_name TEXT,
                account_credit INTEGER DEFAULT 0,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Orders table
            """
            CREATE TABLE IF NOT EXISTS orders (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                user_id UUID,
                customer_name TEXT,
                customer_email TEXT,
                tier VARCHAR(20) NOT NULL,
                billing_type VARCHAR(20) NOT NULL DEFAULT 'one-time',
                primary_city TEXT NOT NULL,
                search_radius INTEGER NOT NULL DEFAULT 25,
                additional_cities TEXT[] NOT NULL DEFAULT '{}',
                price_paid INTEGER NOT NULL DEFAULT 0,
                lead_count_range VARCHAR(20),
                min_leads INTEGER,
                max_leads INTEGER,
                stripe_payment_intent_id VARCHAR(255),
                stripe_subscription_id VARCHAR(255),
                status order_status NOT NULL DEFAULT 'pending',
                delivered_at TIMESTAMPTZ,
                next_delivery_date TIMESTAMPTZ,
                leads_count INTEGER NOT NULL DEFAULT 0,
                total_leads_delivered INTEGER NOT NULL DEFAULT 0,
                sheet_url TEXT,
                finalize_attempts INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,

            # Leads table (written by the scraping pipeline)
            """
            CREATE TABLE IF NOT EXISTS leads (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                order_id UUID NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
                address TEXT NOT NULL,
                city TEXT,
                state TEXT,
                zip TEXT,
                seller_name TEXT,
                contact TEXT,
                price TEXT,
                source TEXT NOT NULL,
                source_type TEXT,
                url TEXT,
                date_listed DATE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,

            # Create indexes
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_payment_intent
                ON orders(stripe_payment_intent_id)
                WHERE stripe_payment_intent_id IS NOT NULL
            """,
            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_orders_subscription ON orders(stripe_subscription_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_leads_order ON leads(order_id, created_at)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning(f"Migration warning: {e}")

        logger.info("Database migrations complete")


# =============================================================================
# ROW MAPPING
# =============================================================================

ORDER_COLUMNS = [
    name for name in Order.model_fields
    if name not in ("id", "created_at")
]


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_order(row: asyncpg.Record) -> Order:
    data = dict(row)
    data["id"] = str(data["id"])
    if data.get("user_id") is not None:
        data["user_id"] = str(data["user_id"])
    data["additional_cities"] = list(data.get("additional_cities") or [])
    return Order.model_validate(data)


def _row_to_lead(row: asyncpg.Record) -> Lead:
    data = dict(row)
    data["id"] = str(data["id"])
    data["order_id"] = str(data["order_id"])
    return Lead.model_validate(data)


def _set_clause(fields: Dict[str, Any], start: int = 1) -> tuple[str, list]:
    """Build `col = $n` pairs for whitelisted order columns."""
    unknown = set(fields) - set(ORDER_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown order fields: {sorted(unknown)}")

    clauses, params = [], []
    for i, (key, value) in enumerate(fields.items(), start=start):
        clauses.append(f"{key} = ${i}")
        params.append(_to_db(value))
    return ", ".join(clauses), params


# =============================================================================
# STORES
# =============================================================================

class PostgresOrderStore(IOrderStore):
    """Orders table"""

    async def insert(self, order: Order) -> Order:
        columns = ["id", "created_at", *ORDER_COLUMNS]
        values = [_to_db(getattr(order, c)) for c in columns]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

        try:
            row = await Database.fetch_one(
                f"INSERT INTO orders ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *",
                *values,
            )
        except asyncpg.UniqueViolationError:
            raise DuplicateOrderError(order.stripe_payment_intent_id or "")

        return _row_to_order(row)

    async def get(self, order_id: str) -> Optional[Order]:
        try:
            row = await Database.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        except asyncpg.DataError:
            # Not a UUID
            return None
        return _row_to_order(row) if row else None

    async def update(self, order_id: str, **fields: Any) -> Order:
        fields.setdefault("updated_at", datetime.now().astimezone())
        clause, params = _set_clause(fields)
        params.append(order_id)

        row = await Database.fetch_one(
            f"UPDATE orders SET {clause} WHERE id = ${len(params)} RETURNING *",
            *params,
        )
        if not row:
            raise OrderNotFoundError(order_id)
        return _row_to_order(row)

    async def find_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        matches = await self.list_by_payment_reference(payment_reference)
        return matches[0] if matches else None

    async def list_by_payment_reference(self, payment_reference: str) -> list[Order]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM orders
            WHERE stripe_payment_intent_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            payment_reference,
        )
        return [_row_to_order(r) for r in rows]

    async def find_latest_by_subscription(self, subscription_id: str) -> Optional[Order]:
        row = await Database.fetch_one(
            """
            SELECT * FROM orders
            WHERE stripe_subscription_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            subscription_id,
        )
        return _row_to_order(row) if row else None

    async def list_by_owner(self, user_id: str) -> list[Order]:
        rows = await Database.fetch_all(
            "SELECT * FROM orders WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return [_row_to_order(r) for r in rows]

    async def mark_delivered(self, order_id: str, **fields: Any) -> Optional[Order]:
        now = datetime.now().astimezone()
        fields.setdefault("delivered_at", now)
        fields.setdefault("updated_at", now)
        clause, params = _set_clause(fields)
        params.append(order_id)

        # Conditional write: exactly one concurrent caller gets a row back
        row = await Database.fetch_one(
            f"""
            UPDATE orders SET {clause}
            WHERE id = ${len(params)} AND delivered_at IS NULL
            RETURNING *
            """,
            *params,
        )
        if row:
            return _row_to_order(row)

        if not await self.get(order_id):
            raise OrderNotFoundError(order_id)
        return None

    async def find_stale(self, older_than: datetime, limit: int = 10) -> list[Order]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM orders
            WHERE status = 'processing'
              AND delivered_at IS NULL
              AND updated_at < $1
            ORDER BY updated_at ASC
            LIMIT $2
            """,
            older_than,
            limit,
        )
        return [_row_to_order(r) for r in rows]


class PostgresLeadStore(ILeadStore):
    """Leads table"""

    async def list_for_order(self, order_id: str) -> list[Lead]:
        rows = await Database.fetch_all(
            "SELECT * FROM leads WHERE order_id = $1 ORDER BY created_at ASC",
            order_id,
        )
        return [_row_to_lead(r) for r in rows]

    async def count_for_order(self, order_id: str) -> int:
        row = await Database.fetch_one(
            "SELECT COUNT(*) AS count FROM leads WHERE order_id = $1",
            order_id,
        )
        return row["count"] if row else 0

    async def add(self, lead: Lead) -> Lead:
        date_listed: Optional[date] = lead.date_listed
        row = await Database.fetch_one(
            """
            INSERT INTO leads
            (id, order_id, address, city, state, zip, seller_name, contact,
             price, source, source_type, url, date_listed, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
            """,
            lead.id, lead.order_id, lead.address, lead.city, lead.state, lead.zip,
            lead.seller_name, lead.contact, lead.price, lead.source, lead.source_type,
            lead.url, date_listed, lead.created_at,
        )
        return _row_to_lead(row)


class PostgresProfileStore(IProfileStore):
    """Profiles table"""

    async def get(self, user_id: str) -> Optional[Profile]:
        row = await Database.fetch_one(
            "SELECT id, full_name, account_credit FROM profiles WHERE id = $1",
            user_id,
        )
        if not row:
            return None
        data = dict(row)
        data["id"] = str(data["id"])
        return Profile.model_validate(data)


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(settings: Settings):
    """Initialize database on app startup"""
    await Database.initialize(settings)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()


if __name__ == "__main__":
    async def smoke():
        settings = Settings.from_env()
        await init_database(settings)
        print(f"Database reachable: {await Database.ping()}")
        await close_database()

    asyncio.run(smoke())
