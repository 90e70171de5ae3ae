# Pipeline Agents
# ===============
# The four order-fulfillment components plus the lead-acquisition work queue

from .payment_gateway import (
    PaymentGateway,
    WebhookRouter,
    build_order_command,
)
from .lead_acquisition import (
    LeadAcquisitionJob,
    LeadAcquisitionTrigger,
    InMemoryWorkQueue,
    RabbitMQWorkQueue,
    ScraperClient,
    create_work_queue,
)
from .delivery_finalizer import DeliveryFinalizer
from .notifications import (
    NotificationDispatcher,
    NotificationRecord,
    NotificationType,
    DeliveryStatus,
    ResendEmailClient,
    InMemoryEmailClient,
)

__all__ = [
    # Payment Gateway Adapter
    "PaymentGateway",
    "WebhookRouter",
    "build_order_command",
    # Lead Acquisition Trigger
    "LeadAcquisitionJob",
    "LeadAcquisitionTrigger",
    "InMemoryWorkQueue",
    "RabbitMQWorkQueue",
    "ScraperClient",
    "create_work_queue",
    # Delivery Finalizer
    "DeliveryFinalizer",
    # Notification Dispatcher
    "NotificationDispatcher",
    "NotificationRecord",
    "NotificationType",
    "DeliveryStatus",
    "ResendEmailClient",
    "InMemoryEmailClient",
]
