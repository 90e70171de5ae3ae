# schemas/orders.py
# ============================================================================
# REALTYLEADSAI FULFILLMENT - ORDER / LEAD SCHEMAS
# ============================================================================
# Orders are the fulfillment unit; leads are scraped rows owned by an order.
# ============================================================================

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

MAX_ADDITIONAL_CITIES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class PricingTier(str, Enum):
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def quota(self) -> tuple[int, int]:
        """(min, max) leads promised for the tier"""
        return TIER_QUOTAS[self]


TIER_QUOTAS: dict[PricingTier, tuple[int, int]] = {
    PricingTier.STARTER: (20, 25),
    PricingTier.GROWTH: (40, 50),
    PricingTier.PRO: (110, 130),
    PricingTier.ENTERPRISE: (150, 200),
}


class BillingType(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: Optional[str]) -> "BillingType":
        normalized = (value or "").strip().lower().replace("_", "-")
        if normalized in ("monthly", "recurring", "subscription"):
            return cls.MONTHLY
        return cls.ONE_TIME


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_DELIVERY = "partial_delivery"


# ============================================================================
# SECTION 2: ENTITIES
# ============================================================================

class Order(BaseModel):
    """One purchase or subscription-renewal fulfillment unit."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None

    tier: PricingTier
    billing_type: BillingType = BillingType.ONE_TIME
    primary_city: str
    search_radius: int = Field(default=25, ge=0)
    additional_cities: list[str] = Field(default_factory=list)
    price_paid: int = 0  # cents
    lead_count_range: Optional[str] = None
    min_leads: Optional[int] = None
    max_leads: Optional[int] = None

    stripe_payment_intent_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    delivered_at: Optional[datetime] = None
    next_delivery_date: Optional[datetime] = None
    leads_count: int = 0
    total_leads_delivered: int = 0
    sheet_url: Optional[str] = None
    finalize_attempts: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("additional_cities")
    @classmethod
    def _bounded_cities(cls, value: list[str]) -> list[str]:
        cities = [c.strip() for c in value if c and c.strip()]
        if len(cities) > MAX_ADDITIONAL_CITIES:
            raise ValueError(f"At most {MAX_ADDITIONAL_CITIES} additional cities allowed")
        return cities

    @computed_field
    @property
    def is_delivered(self) -> bool:
        return self.delivered_at is not None

    @property
    def target_cities(self) -> list[str]:
        return [self.primary_city, *self.additional_cities]

    @property
    def is_recurring(self) -> bool:
        return self.billing_type == BillingType.MONTHLY


class Lead(BaseModel):
    """One scraped seller/property record. Read-only to this service."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    seller_name: Optional[str] = None
    contact: Optional[str] = None
    price: Optional[str] = None
    source: str
    source_type: Optional[str] = None
    url: Optional[str] = None
    date_listed: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("date_listed", mode="before")
    @classmethod
    def _parse_date_listed(cls, value):
        # Scrapers write free-form timestamps; keep the date part, drop garbage
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
        except ValueError:
            return None

    @property
    def email(self) -> Optional[str]:
        if self.contact and "@" in self.contact:
            return self.contact.strip()
        return None

    @property
    def phone(self) -> Optional[str]:
        if self.contact and "@" not in self.contact:
            return self.contact.strip()
        return None


class Profile(BaseModel):
    """Minimal account metadata keyed to the auth identity."""

    id: str
    full_name: Optional[str] = None
    account_credit: Optional[int] = None


# ============================================================================
# SECTION 3: COMMANDS & RESULTS
# ============================================================================

class OrderCommand(BaseModel):
    """Normalized order-creation command derived from a payment event."""

    payment_reference: str
    subscription_reference: Optional[str] = None
    source_event_type: str
    paid: bool = True

    tier: PricingTier
    billing_type: BillingType = BillingType.ONE_TIME
    primary_city: str
    search_radius: int = Field(default=25, ge=0)
    additional_cities: list[str] = Field(default_factory=list)
    price_paid: int = Field(default=0, ge=0)
    lead_count_range: Optional[str] = None

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None


class WebhookResult(BaseModel):
    """Outcome returned to the payment provider"""

    received: bool = True
    event_type: str
    outcome: Literal["created", "duplicate", "promoted", "renewed", "ignored"]
    order_id: Optional[str] = None
    detail: Optional[str] = None


class FinalizeResult(BaseModel):
    """Outcome of one finalization invocation"""

    order_id: str
    outcome: Literal["finalized", "already_delivered", "awaiting_leads"]
    artifact_url: Optional[str] = None
    document_url: Optional[str] = None
    export_url: Optional[str] = None
    sheet_url: Optional[str] = None
    leads_count: int = 0
    status: Optional[OrderStatus] = None
    message: str = ""
