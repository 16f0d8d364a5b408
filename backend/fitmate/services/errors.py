"""Domain exceptions raised by the membership payment services"""


class PaymentServiceError(Exception):
    """Base class; carries the HTTP status the API layer should answer with"""
    status_code = 500
    error_code = "PAYMENT_ERROR"

    def __init__(self, message: str = None):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code


class CheckoutError(PaymentServiceError):
    """Checkout request rejected before any purchase is recorded"""
    status_code = 400
    error_code = "CHECKOUT_REJECTED"


class UserNotFoundError(CheckoutError):
    status_code = 404
    error_code = "USER_NOT_FOUND"


class UnknownPriceError(CheckoutError):
    status_code = 400
    error_code = "UNKNOWN_PRICE"


class AlreadyAtOrAboveTargetError(CheckoutError):
    status_code = 409
    error_code = "ALREADY_AT_OR_ABOVE_TARGET"


class GatewayError(PaymentServiceError):
    """Gateway call failed; safe to retry"""
    status_code = 502
    error_code = "GATEWAY_UNAVAILABLE"


class GatewayConfigurationError(PaymentServiceError):
    status_code = 500
    error_code = "GATEWAY_NOT_CONFIGURED"


class SessionNotFoundError(PaymentServiceError):
    status_code = 404
    error_code = "SESSION_NOT_FOUND"


class InvalidWebhookError(PaymentServiceError):
    """Webhook payload or signature failed verification"""
    status_code = 400
    error_code = "INVALID_WEBHOOK"


class InvalidPlanConfigError(ValueError):
    """Plan registry file is malformed or grants a non-purchasable role"""


class ReconciliationFailedError(PaymentServiceError):
    """Settlement hit a transient failure; the caller (or the gateway) should retry"""
    status_code = 500
    error_code = "RECONCILIATION_FAILED"
