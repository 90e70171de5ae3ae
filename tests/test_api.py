"""Tests for the FastAPI surface."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import (
    SERVICE_ROLE_KEY,
    checkout_session,
    make_lead,
    make_order,
    renewal_invoice,
    sign_payload,
    stripe_event,
)


@pytest.fixture
def api_client(pipeline):
    with TestClient(create_app(pipeline=pipeline)) as client:
        yield client


SERVICE_AUTH = {"Authorization": f"Bearer {SERVICE_ROLE_KEY}"}


def post_event(client, event_type, obj, signature=None):
    payload = stripe_event(event_type, obj)
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": signature if signature is not None else sign_payload(payload),
    }
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)


class TestHealth:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["work_queue_connected"] is True
        assert "X-Request-ID" in response.headers

    def test_ready_and_live(self, api_client):
        assert api_client.get("/ready").json() == {"ready": True}
        assert api_client.get("/live").json() == {"live": True}


class TestStripeWebhook:
    def test_checkout_creates_order(self, api_client, pipeline):
        response = post_event(api_client, "checkout.session.completed", checkout_session())

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["outcome"] == "created"
        assert len(pipeline.orders.all()) == 1
        assert len(pipeline.queue.enqueued) == 1

    def test_replay_returns_duplicate(self, api_client, pipeline):
        post_event(api_client, "checkout.session.completed", checkout_session())
        response = post_event(api_client, "checkout.session.completed", checkout_session())

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"
        assert len(pipeline.orders.all()) == 1

    def test_bad_signature_is_400_without_mutation(self, api_client, pipeline):
        response = post_event(api_client, "checkout.session.completed", checkout_session(), signature="t=1,v1=bad")

        assert response.status_code == 400
        assert pipeline.orders.all() == []
        assert pipeline.email_client.outbox == []

    def test_missing_signature_is_400(self, api_client):
        response = api_client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    def test_renewal_without_original_is_404(self, api_client):
        response = post_event(api_client, "invoice.paid", renewal_invoice(subscription_id="sub_missing"))
        assert response.status_code == 404

    def test_malformed_metadata_is_400(self, api_client, pipeline):
        response = post_event(api_client, "checkout.session.completed", checkout_session(search_radius="-5"))

        assert response.status_code == 400
        assert pipeline.orders.all() == []

    def test_store_failure_is_500(self, api_client, pipeline):
        with patch.object(pipeline.orders, "insert", AsyncMock(side_effect=ConnectionError("db down"))):
            response = post_event(api_client, "checkout.session.completed", checkout_session())
        assert response.status_code == 500


class TestFinalizeEndpoint:
    def test_finalize_and_repeat(self, api_client, pipeline):
        order = make_order()

        async def seed():
            await pipeline.orders.insert(order)
            await pipeline.leads.add(make_lead(order.id))

        asyncio.run(seed())

        with patch("pipeline.agents.delivery_finalizer.generate_lead_report", AsyncMock(return_value=b"%PDF")):
            first = api_client.post(f"/api/orders/{order.id}/finalize", headers=SERVICE_AUTH)
            second = api_client.post(f"/api/orders/{order.id}/finalize", headers=SERVICE_AUTH)

        assert first.status_code == 200
        assert first.json()["outcome"] == "finalized"
        assert second.json()["outcome"] == "already_delivered"
        assert second.json()["artifact_url"] == first.json()["artifact_url"]

    def test_no_leads(self, api_client, pipeline):
        order = make_order()
        asyncio.run(pipeline.orders.insert(order))

        response = api_client.post(f"/api/orders/{order.id}/finalize", headers=SERVICE_AUTH)

        assert response.status_code == 200
        assert response.json()["outcome"] == "awaiting_leads"

    def test_unknown_order_is_404(self, api_client):
        response = api_client.post("/api/orders/does-not-exist/finalize", headers=SERVICE_AUTH)
        assert response.status_code == 404

    def test_missing_bearer_is_401(self, api_client, pipeline):
        order = make_order()
        asyncio.run(pipeline.orders.insert(order))

        response = api_client.post(f"/api/orders/{order.id}/finalize")

        assert response.status_code == 401
        assert asyncio.run(pipeline.orders.get(order.id)).delivered_at is None

    def test_wrong_bearer_is_401(self, api_client):
        response = api_client.post(
            "/api/orders/does-not-exist/finalize",
            headers={"Authorization": "Bearer not-the-key"},
        )
        assert response.status_code == 401
