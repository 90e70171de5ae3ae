"""Tests for the in-memory order store semantics the pipeline relies on."""

import asyncio
from datetime import timedelta

import pytest

from conftest import make_order
from pipeline.errors import DuplicateOrderError, OrderNotFoundError
from pipeline.stores import InMemoryOrderStore
from schemas.orders import MAX_ADDITIONAL_CITIES, OrderStatus, utcnow


def test_payment_reference_is_unique():
    store = InMemoryOrderStore()

    async def scenario():
        await store.insert(make_order(stripe_payment_intent_id="pi_1"))
        await store.insert(make_order(stripe_payment_intent_id="pi_1"))

    with pytest.raises(DuplicateOrderError):
        asyncio.run(scenario())
    assert len(store.all()) == 1


def test_orders_without_reference_do_not_collide():
    store = InMemoryOrderStore()

    async def scenario():
        await store.insert(make_order(stripe_payment_intent_id=None))
        await store.insert(make_order(stripe_payment_intent_id=None))

    asyncio.run(scenario())
    assert len(store.all()) == 2


def test_mark_delivered_is_conditional():
    store = InMemoryOrderStore()
    order = make_order()

    async def scenario():
        await store.insert(order)
        first = await store.mark_delivered(order.id, leads_count=3, status=OrderStatus.COMPLETED)
        second = await store.mark_delivered(order.id, leads_count=99, status=OrderStatus.COMPLETED)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.delivered_at is not None
    assert second is None
    assert asyncio.run(store.get(order.id)).leads_count == 3


def test_unknown_order_updates_raise():
    store = InMemoryOrderStore()
    with pytest.raises(OrderNotFoundError):
        asyncio.run(store.update("missing", status=OrderStatus.FAILED))
    with pytest.raises(OrderNotFoundError):
        asyncio.run(store.mark_delivered("missing"))


def test_latest_subscription_order_wins():
    store = InMemoryOrderStore()
    older = make_order(stripe_subscription_id="sub_1", created_at=utcnow() - timedelta(days=30))
    newer = make_order(stripe_subscription_id="sub_1")

    async def scenario():
        await store.insert(newer)
        await store.insert(older)
        return await store.find_latest_by_subscription("sub_1")

    assert asyncio.run(scenario()).id == newer.id


def test_update_refreshes_updated_at():
    store = InMemoryOrderStore()
    order = make_order(updated_at=utcnow() - timedelta(hours=1))

    async def scenario():
        await store.insert(order)
        return await store.update(order.id, finalize_attempts=1)

    updated = asyncio.run(scenario())
    assert updated.updated_at > order.updated_at
    assert updated.finalize_attempts == 1


def test_additional_cities_are_bounded():
    with pytest.raises(ValueError):
        make_order(additional_cities=[f"City {i}" for i in range(MAX_ADDITIONAL_CITIES + 1)])
