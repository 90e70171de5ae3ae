"""
Payment Gateway Adapter
=======================
Turns verified Stripe webhook events into at most one order per payment.

- Signature verification before anything is parsed
- Webhook Router (register-by-decorator event handling)
- One normalized OrderCommand and one creation path for the three event
  types that can report the same payment
- Storage uniqueness on the payment reference as the authoritative
  duplicate signal (the lookup beforehand only saves work)
- Subscription renewals cloned from the latest order of the subscription

pip install pydantic stripe structlog
"""

import json
from datetime import timedelta
from typing import Any, Callable, Optional

import stripe
import structlog
from pydantic import ValidationError

from pipeline.agents.lead_acquisition import LeadAcquisitionTrigger
from pipeline.agents.notifications import NotificationDispatcher
from pipeline.errors import (
    DuplicateOrderError,
    InvalidEventError,
    OrderNotFoundError,
    WebhookSignatureError,
)
from pipeline.stores import IOrderStore, IProfileStore
from schemas.orders import (
    MAX_ADDITIONAL_CITIES,
    BillingType,
    Order,
    OrderCommand,
    OrderStatus,
    PricingTier,
    WebhookResult,
    utcnow,
)
from storage.supabase_accounts import IAccountDirectory


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, Any], Any]


class WebhookRouter:
    """Maps Stripe event types to handlers."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, log) -> Optional[WebhookResult]:
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            log.info("no_handler", event_type=event_type)
            return None

        return await handler(event, log)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# METADATA PARSING
# =============================================================================

def _parse_int(value: Any, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(float(str(value).strip()))
    except (ValueError, OverflowError):
        raise InvalidEventError(f"Expected a number, got {value!r}")


def _price_cents(metadata_price: Any, amount: Optional[int]) -> int:
    """Stripe amounts are cents; checkout metadata carries whole dollars."""
    if amount:
        return amount
    if metadata_price in (None, ""):
        return 0
    try:
        return int(round(float(str(metadata_price).strip().lstrip("$")) * 100))
    except (ValueError, OverflowError):
        raise InvalidEventError(f"Expected a price, got {metadata_price!r}")


def _parse_cities(raw: Any) -> list[str]:
    """Checkout stores additional cities as a JSON array string."""
    if not raw:
        return []
    if isinstance(raw, list):
        cities = raw
    else:
        try:
            cities = json.loads(raw)
        except (TypeError, ValueError):
            cities = str(raw).split(",")
    if not isinstance(cities, list):
        raise InvalidEventError("additional_cities must be a list")
    return [str(c).strip() for c in cities if str(c).strip()][:MAX_ADDITIONAL_CITIES]


def build_order_command(
    event_type: str,
    obj: dict,
    payment_reference: str,
    paid: bool,
    amount: Optional[int],
    email: Optional[str],
    subscription_reference: Optional[str] = None,
) -> Optional[OrderCommand]:
    """
    Normalize one payment object into an OrderCommand.

    Returns None when the object carries no order metadata (tier and
    primary_city), which is how Stripe reports charges that were not
    created by our checkout.
    """
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise InvalidEventError("metadata must be an object")
    if not metadata.get("tier") or not metadata.get("primary_city"):
        return None

    try:
        tier = PricingTier(str(metadata["tier"]).strip().lower())
    except ValueError:
        raise InvalidEventError(f"Unknown tier {metadata['tier']!r}")

    try:
        return OrderCommand(
            payment_reference=payment_reference,
            subscription_reference=subscription_reference,
            source_event_type=event_type,
            paid=paid,
            tier=tier,
            billing_type=BillingType.parse(metadata.get("billing")),
            primary_city=str(metadata["primary_city"]).strip(),
            search_radius=_parse_int(metadata.get("search_radius"), 25),
            additional_cities=_parse_cities(metadata.get("additional_cities")),
            price_paid=_price_cents(metadata.get("price"), amount),
            lead_count_range=metadata.get("leads"),
            customer_name=metadata.get("name"),
            customer_email=(metadata.get("email") or email or None),
        )
    except ValidationError as e:
        raise InvalidEventError(f"Invalid order metadata: {e.error_count()} error(s)") from e


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class PaymentGateway:
    """
    Webhook-driven order creation.

    Example:
        gateway = PaymentGateway(orders, accounts, notifier, acquisition, webhook_secret="whsec_...")
        result = await gateway.process_webhook(payload, signature)
    """

    def __init__(
        self,
        order_store: IOrderStore,
        accounts: IAccountDirectory,
        notifier: NotificationDispatcher,
        acquisition: LeadAcquisitionTrigger,
        webhook_secret: str,
        recurring_interval_days: int = 30,
        signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
        profiles: Optional[IProfileStore] = None,
    ):
        self.orders = order_store
        self.accounts = accounts
        self.notifier = notifier
        self.acquisition = acquisition
        self.profiles = profiles
        self.webhook_secret = webhook_secret
        self.recurring_interval = timedelta(days=recurring_interval_days)
        self.signature_tolerance = signature_tolerance

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, **context):
        return self._base_logger.bind(component="payment_gateway", **context)

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify the Stripe-Signature header, then parse the body.

        Raises:
            WebhookSignatureError: header missing or signature invalid
            InvalidEventError: body is not a Stripe event
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidEventError("Webhook body is not UTF-8")

        # Verify BEFORE parsing
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.signature_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(str(e)) from e

        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidEventError("Webhook body is not valid JSON")

        data = event.get("data") if isinstance(event, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise InvalidEventError("Webhook body is not a Stripe event")
        return event

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and handle one webhook delivery.

        Runs to completion before returning so a store failure surfaces as
        an error response and Stripe re-delivers the event.
        """
        log = self._get_logger()
        try:
            event = self.verify_event(payload, signature)
        except WebhookSignatureError as e:
            log.warning("webhook_signature_invalid", error=str(e))
            raise
        except InvalidEventError as e:
            log.warning("webhook_malformed", error=str(e))
            raise

        event_type = event.get("type", "unknown")
        log = self._get_logger(stripe_event_id=event.get("id"), event_type=event_type)
        log.info("webhook_received")

        result = await self.router.route(event, log)
        if result is None:
            result = WebhookResult(event_type=event_type, outcome="ignored", detail="unhandled event type")

        log.info("webhook_processed", outcome=result.outcome, order_id=result.order_id)
        return result

    def _register_handlers(self):

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, log):
            session = event["data"]["object"]
            details = session.get("customer_details") or {}
            command = build_order_command(
                event_type=event["type"],
                obj=session,
                payment_reference=session.get("payment_intent") or session["id"],
                paid=session.get("payment_status", "paid") in ("paid", "no_payment_required"),
                amount=session.get("amount_total"),
                email=details.get("email") or session.get("customer_email"),
                subscription_reference=session.get("subscription"),
            )
            return await self._handle_command(event["type"], command, log)

        @self.router.register("payment_intent.succeeded")
        async def handle_payment_intent(event: dict, log):
            intent = event["data"]["object"]
            command = build_order_command(
                event_type=event["type"],
                obj=intent,
                payment_reference=intent["id"],
                paid=intent.get("status", "succeeded") == "succeeded",
                amount=intent.get("amount_received") or intent.get("amount"),
                email=intent.get("receipt_email"),
            )
            return await self._handle_command(event["type"], command, log)

        @self.router.register("charge.succeeded")
        async def handle_charge(event: dict, log):
            charge = event["data"]["object"]
            billing = charge.get("billing_details") or {}
            command = build_order_command(
                event_type=event["type"],
                obj=charge,
                payment_reference=charge.get("payment_intent") or charge["id"],
                paid=bool(charge.get("paid", True)),
                amount=charge.get("amount"),
                email=billing.get("email") or charge.get("receipt_email"),
            )
            return await self._handle_command(event["type"], command, log)

        @self.router.register("invoice.paid")
        async def handle_invoice_paid(event: dict, log):
            invoice = event["data"]["object"]
            if invoice.get("billing_reason") != "subscription_cycle":
                log.info("invoice_ignored", billing_reason=invoice.get("billing_reason"))
                return WebhookResult(
                    event_type=event["type"], outcome="ignored", detail="not a renewal"
                )
            return await self._on_renewal(invoice, log)

    # =========================================================================
    # ORDER CREATION (single path for every payment event type)
    # =========================================================================

    async def _handle_command(self, event_type: str, command: Optional[OrderCommand], log) -> WebhookResult:
        if command is None:
            log.info("order_metadata_missing")
            return WebhookResult(event_type=event_type, outcome="ignored", detail="no order metadata")
        return await self.create_order(command)

    async def create_order(self, command: OrderCommand) -> WebhookResult:
        """Create the order for a payment unless one already exists."""
        log = self._get_logger(
            payment_reference=command.payment_reference,
            event_type=command.source_event_type,
        )

        existing = await self.orders.find_by_payment_reference(command.payment_reference)
        if existing:
            return await self._on_replay(existing, command, log)

        user_id = await self._lookup_owner(command.customer_email, log)
        if user_id and not command.customer_name:
            command = command.model_copy(update={"customer_name": await self._profile_name(user_id, log)})
        order = self._new_order(command, user_id)

        try:
            order = await self.orders.insert(order)
        except DuplicateOrderError:
            # Lost the race to a concurrent delivery of the same payment
            log.info("order_insert_duplicate")
            existing = await self.orders.find_by_payment_reference(command.payment_reference)
            if existing is None:
                raise
            return await self._on_replay(existing, command, log)

        log.info("order_created",
                 order_id=order.id,
                 tier=order.tier.value,
                 status=order.status.value,
                 recurring=order.is_recurring)

        if order.status == OrderStatus.PROCESSING:
            await self.acquisition.trigger(order)

        await self._confirm_once(order, log)

        return WebhookResult(event_type=command.source_event_type, outcome="created", order_id=order.id)

    async def _on_replay(self, existing: Order, command: OrderCommand, log) -> WebhookResult:
        if existing.status == OrderStatus.PENDING and command.paid:
            order = await self.orders.update(existing.id, status=OrderStatus.PROCESSING)
            log.info("order_promoted", order_id=order.id)
            await self.acquisition.trigger(order)
            return WebhookResult(event_type=command.source_event_type, outcome="promoted", order_id=order.id)

        log.info("order_already_exists", order_id=existing.id)
        return WebhookResult(event_type=command.source_event_type, outcome="duplicate", order_id=existing.id)

    async def _lookup_owner(self, email: Optional[str], log) -> Optional[str]:
        """Owner comes from our own account directory, never from event metadata."""
        if not email:
            return None
        try:
            return await self.accounts.find_user_id_by_email(email)
        except Exception:
            log.warning("owner_lookup_failed", exc_info=True)
            return None

    async def _profile_name(self, user_id: str, log) -> Optional[str]:
        if self.profiles is None:
            return None
        try:
            profile = await self.profiles.get(user_id)
        except Exception:
            log.warning("profile_lookup_failed", user_id=user_id, exc_info=True)
            return None
        return profile.full_name if profile else None

    def _new_order(self, command: OrderCommand, user_id: Optional[str]) -> Order:
        now = utcnow()
        min_leads, max_leads = command.tier.quota
        recurring = command.billing_type == BillingType.MONTHLY
        return Order(
            user_id=user_id,
            customer_name=command.customer_name,
            customer_email=command.customer_email,
            tier=command.tier,
            billing_type=command.billing_type,
            primary_city=command.primary_city,
            search_radius=command.search_radius,
            additional_cities=command.additional_cities,
            price_paid=command.price_paid,
            lead_count_range=command.lead_count_range or f"{min_leads}-{max_leads}",
            min_leads=min_leads,
            max_leads=max_leads,
            stripe_payment_intent_id=command.payment_reference,
            stripe_subscription_id=command.subscription_reference,
            status=OrderStatus.PROCESSING if command.paid else OrderStatus.PENDING,
            next_delivery_date=now + self.recurring_interval if recurring else None,
            created_at=now,
            updated_at=now,
        )

    async def _confirm_once(self, order: Order, log) -> None:
        """Send the confirmation only from the earliest order holding this payment reference."""
        try:
            siblings = await self.orders.list_by_payment_reference(order.stripe_payment_intent_id)
        except Exception:
            log.warning("confirmation_dedup_lookup_failed", order_id=order.id, exc_info=True)
            siblings = []
        if siblings and siblings[0].id != order.id:
            log.warning("confirmation_skipped_duplicate",
                        order_id=order.id,
                        first_order_id=siblings[0].id)
            return
        await self.notifier.send_order_confirmation(order)

    # =========================================================================
    # RENEWALS
    # =========================================================================

    async def _on_renewal(self, invoice: dict, log) -> WebhookResult:
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            parent = (invoice.get("parent") or {}).get("subscription_details") or {}
            subscription_id = parent.get("subscription")
        if not subscription_id:
            raise InvalidEventError("Renewal invoice has no subscription")

        payment_reference = invoice.get("payment_intent") or invoice["id"]
        log = log.bind(subscription_id=subscription_id, payment_reference=payment_reference)

        existing = await self.orders.find_by_payment_reference(payment_reference)
        if existing:
            log.info("renewal_already_processed", order_id=existing.id)
            return WebhookResult(event_type="invoice.paid", outcome="duplicate", order_id=existing.id)

        original = await self.orders.find_latest_by_subscription(subscription_id)
        if not original:
            log.error("renewal_original_missing")
            raise OrderNotFoundError(subscription_id=subscription_id)

        now = utcnow()
        renewal = Order(
            user_id=original.user_id,
            customer_name=original.customer_name,
            customer_email=original.customer_email,
            tier=original.tier,
            billing_type=BillingType.MONTHLY,
            primary_city=original.primary_city,
            search_radius=original.search_radius,
            additional_cities=original.additional_cities,
            price_paid=invoice.get("amount_paid") or original.price_paid,
            lead_count_range=original.lead_count_range,
            min_leads=original.min_leads,
            max_leads=original.max_leads,
            stripe_payment_intent_id=payment_reference,
            stripe_subscription_id=subscription_id,
            status=OrderStatus.PROCESSING,
            next_delivery_date=now + self.recurring_interval,
            created_at=now,
            updated_at=now,
        )

        try:
            renewal = await self.orders.insert(renewal)
        except DuplicateOrderError:
            log.info("renewal_insert_duplicate")
            existing = await self.orders.find_by_payment_reference(payment_reference)
            return WebhookResult(
                event_type="invoice.paid",
                outcome="duplicate",
                order_id=existing.id if existing else None,
            )

        log.info("renewal_order_created", order_id=renewal.id, original_order_id=original.id)
        await self.acquisition.trigger(renewal)
        return WebhookResult(event_type="invoice.paid", outcome="renewed", order_id=renewal.id)
