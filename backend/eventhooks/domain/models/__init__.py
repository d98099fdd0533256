from eventhooks.domain.models.webhook_delivery import WebhookDelivery
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.domain.models.webhook_subscription import WebhookSubscription

__all__ = [
    "WebhookEvent",
    "WebhookSubscription",
    "WebhookDelivery",
]
