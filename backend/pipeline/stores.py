"""
Order / Lead / Profile Stores
=============================
Persistence interfaces for the fulfillment pipeline, plus in-memory
implementations (swap for the asyncpg-backed stores in `database`).

Single-row updates are the only mutation; there is no application-level
locking beyond what the backing store gives a single statement.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from pipeline.errors import DuplicateOrderError, OrderNotFoundError
from schemas.orders import Lead, Order, OrderStatus, Profile, utcnow


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Durable record of orders"""

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        """Insert; raises DuplicateOrderError on a repeated payment reference."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update(self, order_id: str, **fields: Any) -> Order:
        """Update fields on one row; raises OrderNotFoundError."""
        pass

    @abstractmethod
    async def find_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_payment_reference(self, payment_reference: str) -> list[Order]:
        """All orders sharing a payment reference, oldest first."""
        pass

    @abstractmethod
    async def find_latest_by_subscription(self, subscription_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_by_owner(self, user_id: str) -> list[Order]:
        pass

    @abstractmethod
    async def mark_delivered(self, order_id: str, **fields: Any) -> Optional[Order]:
        """
        Set delivered_at (plus fields) only if it is still null.
        Returns None when another invocation already delivered the order.
        """
        pass

    @abstractmethod
    async def find_stale(self, older_than: datetime, limit: int = 10) -> list[Order]:
        """Processing, undelivered orders not touched since `older_than`."""
        pass


class ILeadStore(ABC):
    """Lead rows written by the external scraping pipeline"""

    @abstractmethod
    async def list_for_order(self, order_id: str) -> list[Lead]:
        pass

    @abstractmethod
    async def count_for_order(self, order_id: str) -> int:
        pass

    @abstractmethod
    async def add(self, lead: Lead) -> Lead:
        pass


class IProfileStore(ABC):
    """Account profile lookups"""

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Profile]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """
    Thread-safe in-memory order store.

    `enforce_unique=False` drops the payment-reference constraint, which is
    how a store without the unique index behaves under racing inserts.
    """

    def __init__(self, enforce_unique: bool = True):
        self._orders: dict[str, Order] = {}
        self._enforce_unique = enforce_unique
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            ref = order.stripe_payment_intent_id
            if self._enforce_unique and ref:
                if any(o.stripe_payment_intent_id == ref for o in self._orders.values()):
                    raise DuplicateOrderError(ref)
            self._orders[order.id] = order
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def update(self, order_id: str, **fields: Any) -> Order:
        async with self._lock:
            order = self._orders.get(order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            fields.setdefault("updated_at", utcnow())
            updated = order.model_copy(update=fields)
            self._orders[order_id] = updated
            return updated

    async def find_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        matches = await self.list_by_payment_reference(payment_reference)
        return matches[0] if matches else None

    async def list_by_payment_reference(self, payment_reference: str) -> list[Order]:
        async with self._lock:
            matches = [o for o in self._orders.values() if o.stripe_payment_intent_id == payment_reference]
            return sorted(matches, key=lambda o: (o.created_at, o.id))

    async def find_latest_by_subscription(self, subscription_id: str) -> Optional[Order]:
        async with self._lock:
            matches = [o for o in self._orders.values() if o.stripe_subscription_id == subscription_id]
            if not matches:
                return None
            return max(matches, key=lambda o: o.created_at)

    async def list_by_owner(self, user_id: str) -> list[Order]:
        async with self._lock:
            owned = [o for o in self._orders.values() if o.user_id == user_id]
            return sorted(owned, key=lambda o: o.created_at, reverse=True)

    async def mark_delivered(self, order_id: str, **fields: Any) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            if order.delivered_at is not None:
                return None
            now = utcnow()
            fields.setdefault("delivered_at", now)
            fields.setdefault("updated_at", now)
            updated = order.model_copy(update=fields)
            self._orders[order_id] = updated
            return updated

    async def find_stale(self, older_than: datetime, limit: int = 10) -> list[Order]:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.status == OrderStatus.PROCESSING
                and o.delivered_at is None
                and o.updated_at < older_than
            ]
            return sorted(stale, key=lambda o: o.updated_at)[:limit]

    # Testing utilities
    def all(self) -> list[Order]:
        return list(self._orders.values())


class InMemoryLeadStore(ILeadStore):
    """Lead rows keyed by order"""

    def __init__(self):
        self._leads: dict[str, list[Lead]] = {}
        self._lock = asyncio.Lock()

    async def list_for_order(self, order_id: str) -> list[Lead]:
        async with self._lock:
            return list(self._leads.get(order_id, []))

    async def count_for_order(self, order_id: str) -> int:
        async with self._lock:
            return len(self._leads.get(order_id, []))

    async def add(self, lead: Lead) -> Lead:
        async with self._lock:
            self._leads.setdefault(lead.order_id, []).append(lead)
            return lead


class InMemoryProfileStore(IProfileStore):
    def __init__(self, profiles: Optional[list[Profile]] = None):
        self._profiles = {p.id: p for p in profiles or []}

    async def get(self, user_id: str) -> Optional[Profile]:
        return self._profiles.get(user_id)
