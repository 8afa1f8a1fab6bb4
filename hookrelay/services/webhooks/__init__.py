from hookrelay.services.webhooks.dead_letter import DeadLetterEntry, DeadLetterQueue
from hookrelay.services.webhooks.delivery import DeliveryWorker
from hookrelay.services.webhooks.events import WebhookEventEmitter
from hookrelay.services.webhooks.matching import SubscriptionMatcher, subscription_matches
from hookrelay.services.webhooks.payloads import PayloadBuilder
from hookrelay.services.webhooks.queue import (
    ArqDeliveryQueue,
    DeliveryJob,
    DeliveryQueue,
    InMemoryDeliveryQueue,
    QueueStats,
    create_delivery_queue,
)
from hookrelay.services.webhooks.service import WebhookService
from hookrelay.services.webhooks.signing import HeaderBuilder, VerificationResult, verify_request

__all__ = [
    "ArqDeliveryQueue",
    "DeadLetterEntry",
    "DeadLetterQueue",
    "DeliveryJob",
    "DeliveryQueue",
    "DeliveryWorker",
    "HeaderBuilder",
    "InMemoryDeliveryQueue",
    "PayloadBuilder",
    "QueueStats",
    "SubscriptionMatcher",
    "VerificationResult",
    "WebhookEventEmitter",
    "WebhookService",
    "create_delivery_queue",
    "subscription_matches",
    "verify_request",
]
