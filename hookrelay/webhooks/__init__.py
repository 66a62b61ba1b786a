"""Webhook system: registration, signed event ingress, storage and injection."""

from hookrelay.webhooks.manager import WebhooksManager
from hookrelay.webhooks.models import (
    CreateWebhookInput,
    InjectionRef,
    ReceiveEventInput,
    UpdateWebhookInput,
    WebhookDelivery,
    WebhookEvent,
    WebhookOperationResult,
    WebhookRegistration,
)
from hookrelay.webhooks.storage import LocalWebhookStorage

__all__ = [
    "CreateWebhookInput",
    "InjectionRef",
    "LocalWebhookStorage",
    "ReceiveEventInput",
    "UpdateWebhookInput",
    "WebhookDelivery",
    "WebhookEvent",
    "WebhookOperationResult",
    "WebhookRegistration",
    "WebhooksManager",
]
