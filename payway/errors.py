"""Errors raised by the PayWay integration and the order payment flow.

Each error carries the machine code, whether the caller may retry, and the
HTTP status the views answer with. The gateway retries callbacks on 5xx
responses only, so transient failures map to 5xx and permanent rejections
to 4xx.
"""


class PaywayError(Exception):
    code = "UNKNOWN_ERROR"
    message = "An unknown error occurred"
    retryable = False
    http_status = 500

    def __init__(self, message=None, **details):
        super().__init__(message or self.message)
        self.details = details

    def as_response_body(self) -> dict:
        # Never include exception text or details; callers outside our trust boundary read this
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class ConfigurationError(PaywayError):
    code = "CONFIGURATION_ERROR"
    message = "ABA PayWay service configuration error"
    http_status = 503


class InvalidPayload(PaywayError):
    code = "INVALID_PAYLOAD"
    message = "Malformed gateway payload"
    http_status = 400


class InvalidSignature(PaywayError):
    code = "INVALID_SIGNATURE"
    message = "Invalid callback signature"
    http_status = 400


class OrderNotFound(PaywayError):
    code = "ORDER_NOT_FOUND"
    message = "Order not found"
    http_status = 404


class AmountMismatch(PaywayError):
    code = "AMOUNT_MISMATCH"
    message = "Payment amount does not match order amount"
    http_status = 400


class AlreadyPaid(PaywayError):
    code = "ORDER_ALREADY_PAID"
    message = "Order is already paid"
    http_status = 400


class InvalidOrder(PaywayError):
    code = "INVALID_ORDER"
    message = "Order cannot be paid with ABA PayWay"
    http_status = 400


class Forbidden(PaywayError):
    code = "UNAUTHORIZED"
    message = "Unauthorized access to order"
    http_status = 403


class OrderNotPaid(PaywayError):
    code = "ORDER_NOT_PAID"
    message = "Order is not paid"
    http_status = 400


class PersistenceError(PaywayError):
    code = "DATABASE_ERROR"
    message = "Database operation failed"
    retryable = True
    http_status = 503


class Timeout(PaywayError):
    code = "TIMEOUT_ERROR"
    message = "Request timed out"
    retryable = True
    http_status = 504


class GatewayError(PaywayError):
    code = "API_ERROR"
    message = "ABA PayWay API error"
    retryable = True
    http_status = 502
