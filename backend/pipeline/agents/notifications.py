"""
Notification Dispatcher
=======================
Transactional email at the two points of an order's life:

- Order confirmation (password setup for new accounts, login for returning ones)
- Leads ready (preview of the first leads plus artifact links)

Every send produces a NotificationRecord. Failures are recorded and logged,
never raised: an email problem must not roll back order state.

pip install pydantic httpx structlog
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from pipeline.errors import NotificationError
from schemas.orders import Lead, Order, utcnow
from services.email_templates import RenderedEmail, render_leads_ready, render_order_confirmation
from storage.supabase_accounts import IAccountDirectory


# =============================================================================
# ENUMS & MODELS
# =============================================================================

class NotificationType(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    LEADS_READY = "leads_ready"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationRecord(BaseModel):
    """Email notification tracking"""
    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    notification_type: NotificationType
    recipient_email: Optional[str] = None
    subject: Optional[str] = None

    provider_message_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.SKIPPED
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


# =============================================================================
# EMAIL CLIENTS
# =============================================================================

class IEmailClient(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> str:
        """Send one message, returning the provider message id. Raises NotificationError."""
        pass


class ResendEmailClient(IEmailClient):
    """Resend HTTP API"""

    API_URL = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        sender: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: str, subject: str, html: str) -> str:
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise NotificationError(f"Resend request failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(f"Resend rejected message ({response.status_code}): {response.text}")
        return response.json().get("id", "")


class InMemoryEmailClient(IEmailClient):
    """Outbox list; set `fail` to simulate a provider outage."""

    def __init__(self):
        self.outbox: list[dict] = []
        self.fail = False

    async def send(self, to: str, subject: str, html: str) -> str:
        if self.fail:
            raise NotificationError("email provider unavailable")
        message_id = f"mem-{uuid.uuid4().hex[:12]}"
        self.outbox.append({"id": message_id, "to": to, "subject": subject, "html": html})
        return message_id

    def sent_to(self, email: str, subject_prefix: str = "") -> list[dict]:
        return [m for m in self.outbox if m["to"] == email and m["subject"].startswith(subject_prefix)]


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Renders and sends the lifecycle emails.

    Example:
        notifier = NotificationDispatcher(ResendEmailClient(key, sender), accounts, site_url)
        await notifier.send_order_confirmation(order)
    """

    def __init__(
        self,
        email_client: IEmailClient,
        accounts: IAccountDirectory,
        site_url: str,
        preview_lead_count: int = 5,
    ):
        self.email = email_client
        self.accounts = accounts
        self.site_url = site_url.rstrip("/")
        self.preview_lead_count = preview_lead_count
        self.records: list[NotificationRecord] = []
        self._base_logger = structlog.get_logger()

    def _get_logger(self, order_id: str):
        return self._base_logger.bind(component="notifications", order_id=order_id)

    @property
    def login_url(self) -> str:
        return f"{self.site_url}/login"

    # =========================================================================
    # EVENT HANDLERS
    # =========================================================================

    async def send_order_confirmation(self, order: Order) -> NotificationRecord:
        log = self._get_logger(order.id)
        email = order.customer_email
        if not email:
            return self._skip(order, NotificationType.ORDER_CONFIRMATION, log)

        returning = False
        try:
            returning = await self.accounts.is_returning_account(email)
        except Exception:
            log.warning("account_status_lookup_failed", exc_info=True)

        action_url = self.login_url
        if not returning:
            try:
                action_url = await self.accounts.generate_password_setup_link(
                    email, redirect_to=f"{self.site_url}/reset-password"
                )
            except Exception:
                # Still confirm the order; the customer can use "forgot password"
                log.warning("password_link_failed", exc_info=True)

        min_leads, max_leads = order.tier.quota
        message = render_order_confirmation(
            name=order.customer_name or "there",
            email=email,
            lead_count_label=order.lead_count_range or f"{min_leads}-{max_leads}",
            city=order.primary_city,
            price_cents=order.price_paid,
            action_url=action_url,
            returning_account=returning,
        )
        log.info("sending_order_confirmation", returning_account=returning)
        return await self._send(order, NotificationType.ORDER_CONFIRMATION, email, message, log)

    async def send_leads_ready(
        self,
        order: Order,
        leads: list[Lead],
        document_url: Optional[str] = None,
        export_url: Optional[str] = None,
        sheet_url: Optional[str] = None,
    ) -> NotificationRecord:
        log = self._get_logger(order.id)
        email = order.customer_email
        if not email:
            return self._skip(order, NotificationType.LEADS_READY, log)

        message = render_leads_ready(
            name=order.customer_name or "there",
            lead_count=len(leads),
            city=order.primary_city,
            preview_leads=leads[:self.preview_lead_count],
            site_url=self.site_url,
            document_url=document_url,
            export_url=export_url,
            sheet_url=sheet_url,
        )
        log.info("sending_leads_ready", lead_count=len(leads))
        return await self._send(order, NotificationType.LEADS_READY, email, message, log)

    # =========================================================================
    # EMAIL SENDING
    # =========================================================================

    def _skip(self, order: Order, notification_type: NotificationType, log) -> NotificationRecord:
        record = NotificationRecord(order_id=order.id, notification_type=notification_type)
        self.records.append(record)
        log.warning("notification_skipped_no_email", notification_type=notification_type.value)
        return record

    async def _send(
        self,
        order: Order,
        notification_type: NotificationType,
        recipient: str,
        message: RenderedEmail,
        log,
    ) -> NotificationRecord:
        record = NotificationRecord(
            order_id=order.id,
            notification_type=notification_type,
            recipient_email=recipient,
            subject=message.subject,
        )

        try:
            record.provider_message_id = await self.email.send(recipient, message.subject, message.html)
            record.status = DeliveryStatus.SENT
            record.sent_at = utcnow()
            log.info("notification_sent",
                     notification_type=notification_type.value,
                     message_id=record.provider_message_id)
        except Exception as e:
            record.status = DeliveryStatus.FAILED
            record.last_error = str(e)
            log.error("notification_failed",
                      notification_type=notification_type.value,
                      error=str(e),
                      exc_info=True)

        self.records.append(record)
        return record
