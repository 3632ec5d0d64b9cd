"""Settlement error taxonomy.

Every service translates failures (including external-provider failures)
into one of these before they reach a caller. Blueprints never see a raw
requests exception; the app-level error handler renders any
SettlementError as {"error": kind, "message": ...} with its http_status.

Kinds:
    validation       missing field, unverified email, bad trigger
    not_found        unknown order / payout
    resource_state   insufficient stock, ineligible order, payout on hold
    provider         non-2xx from a gateway (raw body preserved)
    unknown_outcome  timeout on a money-moving call, left for reconciliation
    missing_config   no commission policy resolvable (fail closed)
"""


class SettlementError(Exception):
    """Base error for the settlement pipeline."""

    kind = "internal"
    http_status = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SettlementError):
    kind = "validation"
    http_status = 400


class NotFoundError(SettlementError):
    kind = "not_found"
    http_status = 404


class ResourceStateError(SettlementError):
    kind = "resource_state"
    http_status = 409


class InsufficientStockError(ResourceStateError):
    """A line item asked for more than quantity - reserved."""


class OrderNotEligibleError(ResourceStateError):
    """Order is not in a state that allows escrow release."""


class PaymentNotConfirmedError(ResourceStateError):
    """No confirmed provider payment id on the order's payment."""


class UnclaimedOrderError(ResourceStateError):
    """Guest order without a user; it must be claimed first."""


class ReleaseInProgressError(ResourceStateError):
    """Another request holds the escrow release row for this order."""


class PayoutOnHoldError(ResourceStateError):
    """Vendor has no payout recipient; payout parked as on_hold."""


class ProviderError(SettlementError):
    """External gateway answered with a non-success response."""

    kind = "provider"
    http_status = 502

    def __init__(self, message, status_code=None, raw_body=None, **details):
        super().__init__(message, **details)
        self.status_code = status_code
        self.raw_body = raw_body

    def to_dict(self):
        payload = super().to_dict()
        payload["provider_status"] = self.status_code
        payload["provider_error"] = self.raw_body
        return payload


class UnknownOutcomeError(SettlementError):
    """Timeout (or transport failure) on a money-moving call. Never retried."""

    kind = "unknown_outcome"
    http_status = 504


class NoCommissionConfigError(SettlementError):
    kind = "missing_config"
    http_status = 500
