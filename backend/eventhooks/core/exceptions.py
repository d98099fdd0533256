class WebhookError(RuntimeError):
    retryable: bool = False
    error_code: str = "webhook_error"


class DeliveryError(WebhookError):
    retryable = True
    error_code = "delivery_error"

    def __init__(self, message: str, *, status_code: int | None = None, response_body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientDeliveryError(DeliveryError):
    retryable = True
    error_code = "transient_delivery_error"


class PermanentDeliveryError(DeliveryError):
    # Retried with the same backoff as transient failures; the class only classifies the outcome.
    retryable = True
    error_code = "permanent_delivery_error"


class ConfigurationError(WebhookError):
    error_code = "configuration_error"


class StorageError(WebhookError):
    error_code = "storage_error"


class NotFoundError(WebhookError):
    error_code = "not_found"


def classify_status_code(status_code: int, *, body: str | None = None) -> DeliveryError:
    message = f"HTTP {status_code}"
    if 400 <= status_code < 500 and status_code not in {408, 429}:
        return PermanentDeliveryError(message, status_code=status_code, response_body=body)
    return TransientDeliveryError(message, status_code=status_code, response_body=body)
