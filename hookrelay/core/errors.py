from __future__ import annotations


class HookRelayError(Exception):
    """Base error for HookRelay."""


class SubscriptionNotFoundError(HookRelayError):
    """Subscription does not exist or is not owned by the caller."""


class SubscriptionValidationError(HookRelayError):
    """Subscription payload failed validation."""


class DeliveryNotFoundError(HookRelayError):
    """Delivery does not exist or is not owned by the caller."""


class CredentialConfigurationError(HookRelayError):
    """Credential encryption key is missing or invalid."""


class QueueUnavailableError(HookRelayError):
    """Durable delivery queue cannot be reached."""


class IntegrationUnavailableError(HookRelayError):
    """Dependency is temporarily unavailable (circuit open)."""


class DeadLetterHandlerMissingError(HookRelayError):
    """No dead-letter handler is registered for the job's operation."""


class DeliveryErrorType:
    # Stable error codes stamped on delivery records.
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    REQUEST_ERROR = "request_error"
    WEBHOOK_NOT_FOUND = "webhook_not_found"
    WEBHOOK_INACTIVE = "webhook_inactive"
    UNKNOWN_ERROR = "unknown_error"
    RETRY_SCHEDULED = "retry_scheduled"
