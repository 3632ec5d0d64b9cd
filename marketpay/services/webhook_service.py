"""Webhook service — payment and payout confirmations.

Responsible for:
- HMAC-SHA256 signature verification over the raw body
- Mapping untyped provider payloads to a PaymentEvent
- Idempotency via the webhook_processing_log table
- Applying payment outcomes (payment, order, inventory, notifications)
- Applying payout outcomes (vendor payout completion/failure)

Handlers return (http_status, message). Providers retry on anything other
than 2xx, so 500 is only returned when a retry can help.

Payment status mapping:
    success | succeeded | paid | completed  -> succeeded (order paid)
    failed | declined | cancelled           -> failed (order failed)
    anything else                           -> no change: the payment stays
                                               initiated and the order keeps
                                               waiting for payment
Matching is case-insensitive and ignores a dotted event prefix, because the
status may come from the `event` field ("payment.completed" -> completed).
A paid order whose stock can no longer be covered goes to needs_review.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from marketpay.extensions import db
from marketpay.models.escrow import VendorPayout
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.models.webhook_log import WebhookProcessingLog
from marketpay.services.audit_service import log_financial_event
from marketpay.services.inventory_service import (
    commit_order_inventory,
    commit_unheld_items,
    release_inventory,
)
from marketpay.services.notification_service import notify_user, notify_vendor_owner
from marketpay.services.payout_service import apply_payout_outcome

logger = logging.getLogger(__name__)

# A ledger row stuck in "processing" this long is assumed abandoned.
STALE_PROCESSING_AFTER = timedelta(minutes=5)

SUCCESS_STATUSES = {"success", "succeeded", "paid", "completed"}
FAILURE_STATUSES = {"failed", "declined", "cancelled"}

PAYOUT_COMPLETED_STATUSES = {"success", "successful", "completed", "paid"}
PAYOUT_FAILED_STATUSES = {"failed", "reversed", "declined"}

# Source-field precedence per logical value, first non-empty wins.
EVENT_ID_PATHS = ("id", "event_id", "webhook_id", "data.id")
EVENT_TYPE_PATHS = ("event", "type")
SESSION_ID_PATHS = ("data.session_id", "data.provider_session_id", "data.sessionId", "data.reference")
PAYMENT_ID_PATHS = ("data.payment_id", "data.transaction_id", "data.transactionId", "data.id")
ORDER_REFERENCE_PATHS = ("data.order_reference", "data.metadata.order_reference", "data.merchant_ref")
STATUS_PATHS = ("data.status", "status", "event")
PAYOUT_REFERENCE_PATHS = ("data.reference", "data.payout_reference", "data.id", "reference")
FAILURE_REASON_PATHS = ("data.reason", "data.failure_reason", "data.message", "message")


class MalformedPayloadError(ValueError):
    pass


@dataclass
class PaymentEvent:
    event_id: Optional[str]
    event_type: Optional[str]
    session_id: Optional[str]
    payment_id: Optional[str]
    order_reference: Optional[str]
    status: Optional[str]
    payload: dict = field(default_factory=dict)


# ──────────────────────────────────────────────
# Parsing & verification
# ──────────────────────────────────────────────

def verify_signature(raw_body, signature, secret):
    """Constant-time check of a hex HMAC-SHA256 signature over raw_body."""
    if not secret:
        logger.error("Webhook secret not configured, rejecting webhook")
        return False
    if not signature:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _lookup(payload, path):
    value = payload
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def pick(payload, paths):
    """First non-empty value among the dotted `paths`, as a string."""
    for path in paths:
        value = _lookup(payload, path)
        if value not in (None, ""):
            return str(value)
    return None


def load_payload(raw_body):
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise MalformedPayloadError(f"Invalid JSON: {e}")
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload must be a JSON object")
    return payload


def parse_payment_event(payload):
    return PaymentEvent(
        event_id=pick(payload, EVENT_ID_PATHS),
        event_type=pick(payload, EVENT_TYPE_PATHS),
        session_id=pick(payload, SESSION_ID_PATHS),
        payment_id=pick(payload, PAYMENT_ID_PATHS),
        order_reference=pick(payload, ORDER_REFERENCE_PATHS),
        status=pick(payload, STATUS_PATHS),
        payload=payload,
    )


def _normalize_status(status):
    if not status:
        return ""
    # "payment.completed" -> "completed"
    return status.strip().lower().rsplit(".", 1)[-1]


def map_payment_status(status):
    """Provider status -> "succeeded" | "failed" | None (still pending)."""
    normalized = _normalize_status(status)
    if normalized in SUCCESS_STATUSES:
        return "succeeded"
    if normalized in FAILURE_STATUSES:
        return "failed"
    return None


def map_payout_status(status):
    """Provider payout status -> "completed" | "failed" | None (ignored)."""
    normalized = _normalize_status(status)
    if normalized in PAYOUT_COMPLETED_STATUSES:
        return "completed"
    if normalized in PAYOUT_FAILED_STATUSES:
        return "failed"
    return None


# ──────────────────────────────────────────────
# Idempotency ledger
# ──────────────────────────────────────────────

def _is_stale(entry):
    updated = entry.updated_at or entry.created_at
    if updated is None:
        return True
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - updated > STALE_PROCESSING_AFTER


def _claim_event(event_id, provider, event_type, payload):
    """Claim the ledger entry for an event.

    Returns (entry, None) when this request should process the event, or
    (None, message) when it is a duplicate.
    """
    entry = WebhookProcessingLog.query.filter_by(webhook_id=event_id).first()
    if entry is not None:
        if entry.status == "success":
            logger.info(f"Duplicate webhook event {event_id}, skipping")
            return None, "already_processed"
        if entry.status == "processing" and not _is_stale(entry):
            logger.info(f"Webhook event {event_id} is being processed by another request")
            return None, "in_progress"
        entry.status = "processing"
        entry.attempts = (entry.attempts or 0) + 1
        entry.error_message = None
        entry.payload = payload
        db.session.commit()
        return entry, None

    entry = WebhookProcessingLog(
        webhook_id=event_id,
        provider=provider,
        event_type=event_type,
        status="processing",
        payload=payload,
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Webhook event {event_id} claimed concurrently, skipping")
        return None, "in_progress"
    return entry, None


def _finish_event(event_id, status, started, error=None):
    """Record the ledger outcome. Runs after a rollback too, so re-query."""
    entry = WebhookProcessingLog.query.filter_by(webhook_id=event_id).first()
    if entry is None:
        return
    entry.status = status
    entry.error_message = error
    entry.processing_duration_ms = int((time.monotonic() - started) * 1000)
    db.session.commit()


# ──────────────────────────────────────────────
# Payment webhook
# ──────────────────────────────────────────────

def resolve_payment(event, provider):
    """Find the Payment an event refers to.

    Tries provider session id, then provider payment id, then the
    order/merchant reference (latest attempt for that order).
    """
    if event.session_id:
        payment = Payment.query.filter_by(
            provider=provider, provider_session_id=event.session_id
        ).first()
        if payment:
            return payment

    if event.payment_id:
        payment = Payment.query.filter_by(
            provider=provider, provider_payment_id=event.payment_id
        ).first()
        if payment:
            return payment

    if event.order_reference:
        payment = Payment.query.filter_by(merchant_reference=event.order_reference).first()
        if payment:
            return payment
        order = Order.query.filter_by(order_reference=event.order_reference).first()
        if order:
            return (
                Payment.query
                .filter_by(order_id=order.id)
                .order_by(Payment.created_at.desc())
                .first()
            )
    return None


def _apply_success(payment, event):
    order = db.session.get(Order, payment.order_id)
    was_succeeded = payment.status == "succeeded"

    payment.status = "succeeded"
    if event.payment_id:
        payment.provider_payment_id = event.payment_id
    payment.raw_payload = event.payload

    if was_succeeded:
        return

    commit_order_inventory(order.id, commit=False)
    shortfall = commit_unheld_items(order.id)
    if shortfall:
        # Money collected but stock is gone: an operator refunds or restocks.
        order.status = "needs_review"
        log_financial_event(
            "payment_needs_review", "order", order.id, amount=payment.amount,
            metadata={"payment_id": payment.id, "unavailable_products": shortfall},
        )
        notify_user(
            order.user_id, "payment", "Payment update",
            f"Payment received for order {order.order_reference}; "
            f"some items are no longer available and our team will contact you.",
            {"order_id": order.id, "payment_id": payment.id, "status": "needs_review"},
        )
        return

    if order.status in ("pending", "initiated", "failed", "cancelled"):
        order.status = "paid"

    notify_user(
        order.user_id, "payment", "Payment update",
        f"Payment received for order {order.order_reference}.",
        {"order_id": order.id, "payment_id": payment.id, "status": "succeeded"},
    )
    notify_vendor_owner(
        order.vendor_id, "vendor_payment", "Order payment",
        f"Order {order.order_reference} has been paid.",
        {"order_id": order.id, "payment_id": payment.id},
    )


def _apply_failure(payment, event):
    order = db.session.get(Order, payment.order_id)
    if payment.status == "succeeded":
        logger.warning(
            f"Ignoring failure event {event.event_id} for already succeeded payment {payment.id}"
        )
        return
    if payment.status == "failed":
        return

    payment.status = "failed"
    payment.raw_payload = event.payload
    if order.status in ("pending", "initiated"):
        order.status = "failed"
    release_inventory(order.id, commit=False)

    notify_user(
        order.user_id, "payment", "Payment update",
        f"Payment for order {order.order_reference} failed.",
        {"order_id": order.id, "payment_id": payment.id, "status": "failed"},
    )


def handle_payment_webhook(raw_body, signature, provider="tj"):
    """Verify, deduplicate and apply a payment webhook.

    200 processed / duplicate, 400 bad signature or body, 404 no matching
    payment, 500 processing error (provider will retry).
    """
    secret = current_app.config.get("TJ_WEBHOOK_SECRET")
    if not verify_signature(raw_body, signature, secret):
        logger.warning(f"{provider} webhook rejected: invalid signature")
        return 400, "Invalid signature"

    try:
        payload = load_payload(raw_body)
    except MalformedPayloadError as e:
        logger.warning(f"{provider} webhook rejected: {e}")
        return 400, "Malformed payload"

    event = parse_payment_event(payload)
    if not event.event_id:
        logger.warning(f"{provider} webhook rejected: no event id")
        return 400, "Missing event id"

    _, duplicate = _claim_event(event.event_id, provider, event.event_type, payload)
    if duplicate:
        return 200, duplicate

    started = time.monotonic()
    try:
        payment = resolve_payment(event, provider)
        if payment is None:
            logger.warning(
                f"No payment for webhook {event.event_id} (session={event.session_id}, "
                f"payment={event.payment_id}, ref={event.order_reference})"
            )
            _finish_event(event.event_id, "failed", started, "Payment not found")
            return 404, "Payment not found"

        outcome = map_payment_status(event.status)
        if outcome == "succeeded":
            _apply_success(payment, event)
        elif outcome == "failed":
            _apply_failure(payment, event)
        else:
            logger.info(f"Webhook {event.event_id} status {event.status!r} leaves payment pending")
            payment.raw_payload = payload

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error processing webhook {event.event_id}: {e}", exc_info=True)
        _finish_event(event.event_id, "failed", started, str(e))
        return 500, "Processing error"

    _finish_event(event.event_id, "success", started)
    logger.info(f"Webhook {event.event_id} processed ({event.status})")
    return 200, "ok"


# ──────────────────────────────────────────────
# Payout webhook
# ──────────────────────────────────────────────

def handle_payout_webhook(raw_body, signature):
    """Verify, deduplicate and apply a payout status webhook (Vesicash)."""
    provider = "vesicash"
    secret = current_app.config.get("VESICASH_WEBHOOK_SECRET")
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Payout webhook rejected: invalid signature")
        return 400, "Invalid signature"

    try:
        payload = load_payload(raw_body)
    except MalformedPayloadError as e:
        logger.warning(f"Payout webhook rejected: {e}")
        return 400, "Malformed payload"

    event_id = pick(payload, EVENT_ID_PATHS)
    if not event_id:
        return 400, "Missing event id"

    event_type = pick(payload, EVENT_TYPE_PATHS)
    _, duplicate = _claim_event(event_id, provider, event_type, payload)
    if duplicate:
        return 200, duplicate

    started = time.monotonic()
    try:
        payout = None
        for path in PAYOUT_REFERENCE_PATHS:
            reference = pick(payload, (path,))
            if reference:
                payout = VendorPayout.query.filter_by(payout_reference=reference).first()
                if payout:
                    break
        if payout is None:
            logger.warning(f"No payout for webhook {event_id}")
            _finish_event(event_id, "failed", started, "Payout not found")
            return 404, "Payout not found"

        status = pick(payload, STATUS_PATHS)
        outcome = map_payout_status(status)
        if outcome is None:
            logger.info(f"Payout webhook {event_id} status {status!r} acknowledged, no change")
        else:
            apply_payout_outcome(
                payout, outcome,
                reason=pick(payload, FAILURE_REASON_PATHS) or status,
                payload=payload,
            )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error processing payout webhook {event_id}: {e}", exc_info=True)
        _finish_event(event_id, "failed", started, str(e))
        return 500, "Processing error"

    _finish_event(event_id, "success", started)
    return 200, "ok"
