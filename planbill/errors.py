"""Billing error taxonomy.

Every error raised on purpose by planbill derives from ``BillingError`` and
carries a human-readable message naming the offending plan, line item or
customer. Errors that describe limits also carry a machine-readable
``details`` mapping.
"""

from typing import Any


class BillingError(Exception):
    """Base class for planbill errors."""

    code = "billing_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class CatalogValidationError(BillingError):
    """Malformed plan or line item definitions. Raised before any remote call."""

    code = "catalog_validation_error"


class AmbiguousRemoteStateError(BillingError):
    """Duplicate managed records found in Stripe; needs manual cleanup."""

    code = "ambiguous_remote_state"


class PolicyViolation(BillingError):
    """A request that breaks a billing rule."""

    code = "policy_violation"


class InvalidPlanError(PolicyViolation):
    code = "invalid_plan"


class InvalidLineItemError(PolicyViolation):
    code = "invalid_line_item"


class MissingRequiredLineItemsError(PolicyViolation):
    code = "missing_required_line_items"

    def __init__(self, message: str, missing: list[str]) -> None:
        super().__init__(message, {"missing": list(missing)})
        self.missing = list(missing)


class OverLimitOnDowngradeError(PolicyViolation):
    """Consumed resources exceed the limits of the requested plan."""

    code = "over_limit_on_downgrade"


class NoPaymentMethodError(PolicyViolation):
    code = "no_payment_method"


class RedundantSubscribeRequestError(PolicyViolation):
    code = "redundant_subscribe_request"


class URLPairIncompleteError(PolicyViolation):
    code = "url_pair_incomplete"


class TooFrequentError(PolicyViolation):
    code = "too_frequent"

    def __init__(self, message: str, retry_after_ms: int) -> None:
        super().__init__(message, {"retry_after_ms": retry_after_ms})
        self.retry_after_ms = retry_after_ms


class PaymentMethodError(PolicyViolation):
    code = "payment_method_error"


class InvalidCustomerError(PolicyViolation):
    code = "invalid_customer"


class RemoteCallError(BillingError):
    """A Stripe call that kept failing after retries."""

    code = "remote_call_error"


class RateLimitExhaustedError(RemoteCallError):
    code = "rate_limit_exhausted"


class InvalidRemoteDataError(RemoteCallError):
    code = "invalid_remote_data"
