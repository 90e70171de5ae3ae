import hashlib
import hmac
import json
import time
import uuid

import pytest

from config import Settings
from pipeline.orchestrator import build_in_memory_pipeline
from schemas.orders import Lead, Order, OrderStatus, PricingTier

WEBHOOK_SECRET = "whsec_test_secret"
SERVICE_ROLE_KEY = "service-role-test"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict, event_id=None) -> bytes:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }
    return json.dumps(event).encode("utf-8")


def order_metadata(**overrides) -> dict:
    metadata = {
        "tier": "growth",
        "billing": "one-time",
        "primary_city": "Austin",
        "search_radius": "25",
        "additional_cities": json.dumps(["Round Rock"]),
        "price": "199",
        "leads": "40-50",
        "name": "Dana Seller",
        "email": "dana@example.com",
    }
    metadata.update(overrides)
    return metadata


def checkout_session(payment_intent="pi_123", **metadata) -> dict:
    return {
        "id": "cs_test_123",
        "object": "checkout.session",
        "payment_intent": payment_intent,
        "payment_status": "paid",
        "amount_total": 19900,
        "customer_details": {"email": "dana@example.com"},
        "metadata": order_metadata(**metadata),
    }


def payment_intent(intent_id="pi_123", **metadata) -> dict:
    return {
        "id": intent_id,
        "object": "payment_intent",
        "status": "succeeded",
        "amount_received": 19900,
        "receipt_email": "dana@example.com",
        "metadata": order_metadata(**metadata),
    }


def charge(intent_id="pi_123", **metadata) -> dict:
    return {
        "id": "ch_123",
        "object": "charge",
        "payment_intent": intent_id,
        "paid": True,
        "amount": 19900,
        "billing_details": {"email": "dana@example.com"},
        "metadata": order_metadata(**metadata),
    }


def renewal_invoice(subscription_id="sub_123", intent_id="pi_renew_1", amount_paid=19900) -> dict:
    return {
        "id": "in_123",
        "object": "invoice",
        "billing_reason": "subscription_cycle",
        "subscription": subscription_id,
        "payment_intent": intent_id,
        "amount_paid": amount_paid,
    }


def make_order(**overrides) -> Order:
    fields = {
        "customer_name": "Dana Seller",
        "customer_email": "dana@example.com",
        "tier": PricingTier.STARTER,
        "primary_city": "Austin",
        "price_paid": 9900,
        "min_leads": 20,
        "max_leads": 25,
        "lead_count_range": "20-25",
        "stripe_payment_intent_id": f"pi_{uuid.uuid4().hex[:12]}",
        "status": OrderStatus.PROCESSING,
    }
    fields.update(overrides)
    return Order(**fields)


def make_lead(order_id: str, **overrides) -> Lead:
    fields = {
        "order_id": order_id,
        "address": "123 Main St",
        "city": "Austin",
        "state": "TX",
        "zip": "78701",
        "seller_name": "Pat Owner",
        "contact": "512-555-0100",
        "price": "$350,000",
        "source": "Zillow",
        "source_type": "FSBO",
        "url": "https://example.com/listing/1",
        "date_listed": "2025-01-01",
    }
    fields.update(overrides)
    return Lead(**fields)


@pytest.fixture
def settings():
    return Settings(
        stripe_webhook_secret=WEBHOOK_SECRET,
        site_url="https://app.realtyleads.test",
        supabase_service_role_key=SERVICE_ROLE_KEY,
        lead_queue_retry_delay_seconds=0.0,
        stale_threshold_minutes=60,
        max_finalize_attempts=3,
    )


@pytest.fixture
def pipeline(settings):
    return build_in_memory_pipeline(settings)
