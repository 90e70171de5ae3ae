"""
Pipeline Errors
===============
Exception taxonomy shared by the gateway, stores, finalizer and API layer.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all order-pipeline errors."""

    pass


class ConfigurationError(PipelineError):
    """Raised when required settings are missing at startup."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required configuration: {', '.join(missing)}")


class WebhookSignatureError(PipelineError):
    """Raised when a webhook signature header is absent or does not verify."""

    pass


class InvalidEventError(PipelineError):
    """Raised when a verified event cannot be parsed or lacks required fields."""

    pass


class DuplicateOrderError(PipelineError):
    """Raised by a store when an order's payment reference already exists."""

    def __init__(self, payment_reference: str):
        self.payment_reference = payment_reference
        super().__init__(f"Order already exists for payment reference {payment_reference}")


class OrderNotFoundError(PipelineError):
    """Raised when an order lookup by id or subscription finds nothing."""

    def __init__(self, order_id: Optional[str] = None, subscription_id: Optional[str] = None):
        self.order_id = order_id
        self.subscription_id = subscription_id
        if subscription_id:
            msg = f"No order found for subscription {subscription_id}"
        else:
            msg = f"Order not found: {order_id}"
        super().__init__(msg)


class ArtifactError(PipelineError):
    """Raised when a delivery artifact cannot be generated or uploaded."""

    pass


class SheetsUnavailableError(ArtifactError):
    """Raised when the spreadsheet service has no usable credentials or folder."""

    pass


class NotificationError(PipelineError):
    """Raised by the email client when the provider rejects a message."""

    pass
