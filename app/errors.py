"""Billing error taxonomy.

Services raise these; ``app.main`` renders them as JSON with the
``status_code`` of the class. Nothing below is caught inside the services.
"""


class BillingError(Exception):
    code = "billing_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Bad input, rejected before any side effect."""

    code = "validation_error"
    status_code = 422


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class ConfigurationError(BillingError):
    """Unmapped payment method or missing provider credentials."""

    code = "configuration_error"
    status_code = 503


class ProviderError(BillingError):
    """Transport failure, timeout, non-2xx or unexpected response shape."""

    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, provider: str | None = None, timeout: bool = False):
        super().__init__(message)
        self.provider = provider
        self.timeout = timeout


class WebhookSignatureError(BillingError):
    code = "invalid_signature"
    status_code = 401


class ConsistencyError(BillingError):
    """A callback conflicts with a state already recorded."""

    code = "consistency_error"
    status_code = 409


class InsufficientBalanceError(BillingError):
    code = "insufficient_balance"
    status_code = 409

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Solde insuffisant: {requested} demandé, {available} disponible"
        )
        self.requested = requested
        self.available = available


class InvalidStateError(BillingError):
    code = "invalid_state"
    status_code = 409


class InvalidTransitionError(BillingError):
    code = "invalid_transition"
    status_code = 409


class ConcurrentUpdateError(BillingError):
    """Optimistic version check failed; the caller should re-submit."""

    code = "concurrent_update"
    status_code = 409
