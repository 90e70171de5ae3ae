"""Tests for the notification dispatcher and the Resend client."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import make_lead, make_order
from pipeline.agents.notifications import (
    DeliveryStatus,
    InMemoryEmailClient,
    NotificationDispatcher,
    NotificationType,
    ResendEmailClient,
)
from pipeline.errors import NotificationError
from storage.supabase_accounts import InMemoryAccountDirectory

SITE = "https://app.realtyleads.test"


@pytest.fixture
def accounts():
    return InMemoryAccountDirectory()


@pytest.fixture
def outbox():
    return InMemoryEmailClient()


@pytest.fixture
def notifier(outbox, accounts):
    return NotificationDispatcher(outbox, accounts, site_url=SITE + "/", preview_lead_count=2)


class TestOrderConfirmation:
    def test_new_account_gets_password_setup_link(self, notifier, outbox, accounts):
        order = make_order(customer_name="Dana <b>Seller</b>")

        record = asyncio.run(notifier.send_order_confirmation(order))

        assert record.status == DeliveryStatus.SENT
        assert record.notification_type == NotificationType.ORDER_CONFIRMATION
        [message] = outbox.outbox
        assert message["to"] == "dana@example.com"
        assert message["subject"].startswith("Order Confirmed")
        assert "Set Password Now" in message["html"]
        assert "https://auth.local/recover?email=dana@example.com" in message["html"]
        assert "<b>Seller</b>" not in message["html"]
        assert accounts.links_generated == ["dana@example.com"]

    def test_returning_account_gets_login_link(self, notifier, outbox, accounts):
        accounts.add("Dana@Example.com", user_id="user-1", confirmed=True)

        asyncio.run(notifier.send_order_confirmation(make_order()))

        [message] = outbox.outbox
        assert "View Your Dashboard" in message["html"]
        assert f"{SITE}/login" in message["html"]
        assert accounts.links_generated == []

    def test_unconfirmed_account_is_treated_as_new(self, notifier, outbox, accounts):
        accounts.add("dana@example.com", user_id="user-1", confirmed=False)

        asyncio.run(notifier.send_order_confirmation(make_order()))

        assert "Set Password Now" in outbox.outbox[0]["html"]

    def test_link_failure_falls_back_to_login(self, notifier, outbox, accounts):
        accounts.fail_link_generation = True

        record = asyncio.run(notifier.send_order_confirmation(make_order()))

        assert record.status == DeliveryStatus.SENT
        assert f"{SITE}/login" in outbox.outbox[0]["html"]

    def test_account_lookup_failure_still_sends(self, notifier, outbox, accounts):
        with patch.object(accounts, "is_returning_account", AsyncMock(side_effect=RuntimeError("auth down"))):
            record = asyncio.run(notifier.send_order_confirmation(make_order()))

        assert record.status == DeliveryStatus.SENT
        assert len(outbox.outbox) == 1

    def test_missing_email_is_skipped(self, notifier, outbox):
        record = asyncio.run(notifier.send_order_confirmation(make_order(customer_email=None)))
        assert record.status == DeliveryStatus.SKIPPED
        assert outbox.outbox == []

    def test_provider_failure_is_recorded_not_raised(self, notifier, outbox):
        outbox.fail = True

        record = asyncio.run(notifier.send_order_confirmation(make_order()))

        assert record.status == DeliveryStatus.FAILED
        assert "unavailable" in record.last_error
        assert notifier.records == [record]


class TestLeadsReady:
    def test_preview_and_links(self, notifier, outbox):
        order = make_order()
        leads = [make_lead(order.id, address=f"{i} Cedar Ln") for i in range(4)]

        asyncio.run(notifier.send_leads_ready(
            order, leads,
            document_url="https://files.test/report.pdf",
            export_url="https://files.test/leads.csv",
        ))

        [message] = outbox.outbox
        assert message["subject"].startswith("Your Leads Are Ready")
        assert message["html"].count("Cedar Ln") == 2
        assert "https://files.test/report.pdf" in message["html"]
        assert "https://files.test/leads.csv" in message["html"]
        assert "Open Google Sheet" not in message["html"]


class TestResendClient:
    def test_posts_message(self):
        seen = {}

        def respond(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "re_123"})

        client = ResendEmailClient("re_key", "RealtyLeadsAI <hello@realtyleads.test>",
                                   transport=httpx.MockTransport(respond))

        message_id = asyncio.run(client.send("dana@example.com", "Hi", "<p>Hi</p>"))

        assert message_id == "re_123"
        assert seen["url"] == ResendEmailClient.API_URL
        assert seen["auth"] == "Bearer re_key"
        assert seen["body"]["to"] == ["dana@example.com"]

    def test_rejection_raises_notification_error(self):
        client = ResendEmailClient(
            "re_key", "sender@test",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "bad"})),
        )
        with pytest.raises(NotificationError):
            asyncio.run(client.send("dana@example.com", "Hi", "<p>Hi</p>"))
