"""Payment provider adapters.

Responsible for:
- Creating hosted payment page sessions (TJ in minor units, Vesicash in
  major units)
- Transaction lookup for reconciliation (TJ)
- Refunds, settlement and reversal of captured transactions (TJ)
- Escrow release and vendor payout calls (Vesicash)

Providers are built from the Flask config by get_provider() and hold no
state beyond their configuration and auth strategy.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flask import current_app

from marketpay.errors import ProviderError, UnknownOutcomeError, ValidationError
from marketpay.services.gateway_auth import ApiKeyAuth, OAuth2ClientCredentialsAuth
from marketpay.services.gateway_client import get_json, post_json

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Customer refund request"
SETTLEMENT_ACTIONS = ("settle", "reverse")


@dataclass
class CheckoutSession:
    checkout_url: str
    provider_reference: Optional[str]
    raw: dict = field(default_factory=dict)


def to_minor_units(amount):
    """Decimal major units -> integer minor units (e.g. 100.00 -> 10000)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _first(data, *keys):
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def _raise_for_result(result, action):
    """Translate a failed GatewayResult into the error taxonomy."""
    if result.timed_out:
        raise UnknownOutcomeError(f"{action} timed out", error=result.error)
    if result.outcome_unknown:
        raise UnknownOutcomeError(f"{action} failed in transit", error=result.error)
    raise ProviderError(
        f"{action} rejected by provider",
        status_code=result.status_code,
        raw_body=result.raw_body,
    )


# ──────────────────────────────────────────────
# Hosted payment page providers
# ──────────────────────────────────────────────

class PaymentProvider:
    """Base class for hosted payment page providers."""

    name = None

    def __init__(self, config):
        self.config = config
        self.timeout = config.get("GATEWAY_TIMEOUT_SECONDS", 15)

    def create_session(self, order, payment, return_url):
        raise NotImplementedError


class TJProvider(PaymentProvider):
    """Transaction Junction hosted payment page. Amounts in minor units."""

    name = "tj"

    def __init__(self, config):
        super().__init__(config)
        self.base_url = config["TJ_API_BASE_URL"].rstrip("/")
        if config.get("TJ_AUTH_MODE", "oauth2") == "api_key":
            self.auth = ApiKeyAuth(config["TJ_API_KEY"])
        else:
            self.auth = OAuth2ClientCredentialsAuth(
                token_url=config["TJ_OAUTH_TOKEN_URL"],
                client_id=config["TJ_CLIENT_ID"],
                client_secret=config["TJ_CLIENT_SECRET"],
                scope=config.get("TJ_OAUTH_SCOPE"),
                timeout=self.timeout,
            )

    def create_session(self, order, payment, return_url):
        payload = {
            "amount": to_minor_units(payment.amount),
            "currency": payment.currency,
            "order_reference": order.order_reference,
            "merchant_reference": payment.merchant_reference,
            "return_url": return_url,
            "customer": {"email": order.customer_email},
            "metadata": {
                "order_id": order.id,
                "payment_id": payment.id,
                "order_reference": order.order_reference,
            },
        }
        result = post_json(
            f"{self.base_url}{self.config['TJ_CREATE_SESSION_PATH']}",
            payload,
            timeout=self.timeout,
            auth=self.auth,
        )
        if not result.ok:
            _raise_for_result(result, "TJ session creation")

        data = result.data.get("data") if isinstance(result.data.get("data"), dict) else result.data
        checkout_url = _first(data, "hpp_url", "redirect_url", "url")
        if not checkout_url:
            raise ProviderError(
                "TJ session response did not include a checkout URL",
                status_code=result.status_code,
                raw_body=result.raw_body,
            )
        return CheckoutSession(
            checkout_url=checkout_url,
            provider_reference=_first(data, "session_id", "id"),
            raw=result.data,
        )

    def lookup_transaction(self, transaction_id=None, session_id=None, merchant_ref=None):
        """Ask TJ for the current state of a transaction.

        At least one identifier is required. Returns the provider's JSON.
        """
        params = {}
        if transaction_id:
            params["transactionId"] = transaction_id
        if session_id:
            params["sessionId"] = session_id
        if merchant_ref:
            params["merchantRef"] = merchant_ref
        if not params:
            raise ValidationError(
                "At least one identifier required: transaction_id, session_id or merchant_ref"
            )

        result = get_json(
            f"{self.base_url}{self.config['TJ_LOOKUP_PATH']}",
            timeout=self.timeout,
            params=params,
            auth=self.auth,
        )
        if not result.ok:
            _raise_for_result(result, "TJ transaction lookup")
        return result.data

    def refund(self, transaction_id, amount=None, reason=None):
        """Refund a captured transaction; amount (major units) only for partial refunds."""
        payload = {
            "transactionId": transaction_id,
            "reason": reason or DEFAULT_REFUND_REASON,
        }
        if amount is not None:
            payload["amount"] = to_minor_units(amount)

        result = post_json(
            f"{self.base_url}/transactions/{transaction_id}/refund",
            payload,
            timeout=self.timeout,
            auth=self.auth,
        )
        if not result.ok:
            _raise_for_result(result, "TJ refund")
        return result.data

    def settle(self, transaction_id, action, amount=None):
        """Settle (capture) or reverse (void) a transaction.

        amount is only sent for a partial settle.
        """
        if action not in SETTLEMENT_ACTIONS:
            raise ValidationError(f"Invalid settlement action: {action}",
                                  allowed=list(SETTLEMENT_ACTIONS))
        payload = {"transactionId": transaction_id}
        if amount is not None and action == "settle":
            payload["amount"] = to_minor_units(amount)

        result = post_json(
            f"{self.base_url}/transactions/{transaction_id}/{action}",
            payload,
            timeout=self.timeout,
            auth=self.auth,
        )
        if not result.ok:
            _raise_for_result(result, f"TJ {action}")
        return result.data


class VesicashProvider(PaymentProvider):
    """Vesicash hosted payment link. Amounts in major units."""

    name = "vesicash"

    def __init__(self, config):
        super().__init__(config)
        self.base_url = config["VESICASH_API_URL"].rstrip("/")
        self.auth = ApiKeyAuth(config["VESICASH_PUBLIC_KEY"], header="V-PUBLIC-KEY", scheme=None)

    def create_session(self, order, payment, return_url):
        payload = {
            "amount": str(payment.amount),
            "currency": payment.currency,
            "redirect_url": return_url,
            "reference": payment.merchant_reference,
            "customer_email": order.customer_email,
            "description": f"Order {order.order_reference}",
        }
        result = post_json(
            f"{self.base_url}/transactions/create",
            payload,
            timeout=self.timeout,
            auth=self.auth,
        )
        if not result.ok:
            _raise_for_result(result, "Vesicash session creation")

        data = result.data.get("data") or {}
        checkout_url = _first(data, "link", "payment_url")
        if not checkout_url:
            raise ProviderError(
                "Vesicash response did not include a payment link",
                status_code=result.status_code,
                raw_body=result.raw_body,
            )
        return CheckoutSession(
            checkout_url=checkout_url,
            provider_reference=_first(data, "reference", "id"),
            raw=result.data,
        )


PROVIDERS = {
    TJProvider.name: TJProvider,
    VesicashProvider.name: VesicashProvider,
}


def get_provider(name=None, config=None):
    """Build the payment session provider named `name` (default PAYMENT_PROVIDER)."""
    config = config if config is not None else current_app.config
    name = name or config.get("PAYMENT_PROVIDER", "tj")
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        raise ValidationError(f"Unknown payment provider: {name}")
    return provider_cls(config)


# ──────────────────────────────────────────────
# Escrow & payouts (Vesicash)
# ──────────────────────────────────────────────

class EscrowClient:
    """Vesicash escrow/payout API. Results are returned raw (GatewayResult).

    Escrow release and payouts move money, so the callers decide what a
    timeout means; nothing here retries.
    """

    def __init__(self, config=None):
        config = config if config is not None else current_app.config
        self.base_url = config["VESICASH_API_URL"].rstrip("/")
        self.timeout = config.get("GATEWAY_TIMEOUT_SECONDS", 15)
        self.auth = ApiKeyAuth(config["VESICASH_API_KEY"])

    def release_escrow(self, transaction_id, idempotency_key):
        return post_json(
            f"{self.base_url}/escrow/release",
            {"transaction_id": transaction_id},
            timeout=self.timeout,
            auth=self.auth,
            headers={"Idempotency-Key": idempotency_key},
        )

    def create_payout(self, amount, recipient_id, currency, reference=None):
        payload = {
            "amount": str(amount),
            "recipient_id": recipient_id,
            "currency": currency,
            "debit_currency": currency,
        }
        headers = None
        if reference:
            payload["reference"] = reference
            headers = {"Idempotency-Key": reference}
        return post_json(
            f"{self.base_url}/payment/payout",
            payload,
            timeout=self.timeout,
            auth=self.auth,
            headers=headers,
        )
