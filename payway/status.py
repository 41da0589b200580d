import logging

from django.conf import settings

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
CANCELLED = "cancelled"
PENDING = "pending"

OUTCOMES = (SUCCESS, FAILED, CANCELLED, PENDING)

# PayWay pushback / check-transaction status codes
DEFAULT_STATUS_CODES = {
    0: SUCCESS,
    1: CANCELLED,
    2: FAILED,  # declined by bank
    3: FAILED,  # processing error
    4: PENDING,
}

DESCRIPTIONS = {
    0: "Payment completed successfully",
    1: "Payment cancelled by user",
    2: "Payment declined by bank",
    3: "Payment processing error",
    4: "Payment is still processing",
}

# Outcome -> Order.aba_payment_status
ORDER_STATUS = {
    SUCCESS: "completed",
    FAILED: "failed",
    CANCELLED: "cancelled",
    PENDING: "processing",
}

# Outcome -> payment_result["status"]
RESULT_STATUS = {
    SUCCESS: "COMPLETED",
    FAILED: "FAILED",
    CANCELLED: "CANCELLED",
}


def status_table() -> dict:
    configured = settings.PAYWAY.get("STATUS_CODES")
    if not configured:
        return DEFAULT_STATUS_CODES
    table = {int(code): outcome for code, outcome in configured.items()}
    unknown = set(table.values()) - set(OUTCOMES)
    if unknown:
        raise ConfigurationError(f"Unknown outcomes in PAYWAY['STATUS_CODES']: {sorted(unknown)}")
    return {**DEFAULT_STATUS_CODES, **table}


def outcome_for(code: int) -> str:
    """Map a gateway status code to an outcome. Codes outside the table stay pending."""
    outcome = status_table().get(code)
    if outcome is None:
        logger.warning("Unmapped PayWay status code %s treated as pending", code)
        return PENDING
    return outcome


def describe(code: int) -> str:
    return DESCRIPTIONS.get(code, f"Unknown status code: {code}")
