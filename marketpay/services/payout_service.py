"""Payout service — vendor disbursements after escrow release.

Responsible for:
- Processing a pending payout (atomic claim, provider call)
- Dispatching payouts in the background after an escrow release
- Re-dispatching payouts stuck in pending (reconciliation job)
- Applying completion/failure from the payout webhook

status: pending -> processing -> completed | failed
        pending -> on_hold (vendor has no payout recipient)
A timed-out provider call leaves the payout in processing with an
"unknown outcome" reason; it is never re-sent automatically.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_, update

from marketpay.errors import (
    NotFoundError,
    PayoutOnHoldError,
    ProviderError,
    SettlementError,
    UnknownOutcomeError,
)
from marketpay.extensions import db
from marketpay.models.escrow import VendorPayout
from marketpay.models.vendor import Vendor
from marketpay.services.audit_service import log_financial_event
from marketpay.services.notification_service import notify_vendor_owner
from marketpay.services.payment_providers import EscrowClient

logger = logging.getLogger(__name__)


def _payout_reference(data):
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    for source in (inner, data):
        for key in ("reference", "id"):
            if source.get(key):
                return str(source[key])
    return None


def _claim_pending(payout_id):
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(VendorPayout)
        .where(VendorPayout.id == payout_id, VendorPayout.status == "pending")
        .values(
            status="processing",
            processed_at=now,
            last_dispatched_at=now,
            dispatch_attempts=VendorPayout.dispatch_attempts + 1,
        )
    )
    db.session.commit()
    return result.rowcount > 0


# ──────────────────────────────────────────────
# Processing
# ──────────────────────────────────────────────

def process_payout(payout_id):
    """Send one pending payout to the provider.

    Returns {"success": False, "message": "Payout not pending"} when the
    payout was already picked up. Raises PayoutOnHoldError, ProviderError
    or UnknownOutcomeError on the failure paths, after recording them.
    """
    payout = db.session.get(VendorPayout, payout_id)
    if not payout:
        raise NotFoundError("Payout not found", payout_id=payout_id)

    if not _claim_pending(payout_id):
        db.session.refresh(payout)
        logger.info(f"Payout {payout_id} skipped, status is {payout.status}")
        return {"success": False, "message": "Payout not pending", "status": payout.status}

    db.session.refresh(payout)
    vendor = db.session.get(Vendor, payout.vendor_id)
    recipient_id = vendor.payout_recipient_id if vendor else None

    if not recipient_id:
        payout.status = "on_hold"
        payout.failure_reason = "Missing payout recipient ID for vendor"
        db.session.commit()
        logger.warning(f"Payout {payout_id} on hold: vendor {payout.vendor_id} not onboarded")
        raise PayoutOnHoldError(payout.failure_reason, payout_id=payout_id)

    currency = payout.currency or current_app.config.get("PAYOUT_CURRENCY", "ZMW")
    result = EscrowClient().create_payout(
        payout.amount, recipient_id, currency, reference=f"payout_{payout.id}"
    )

    if result.outcome_unknown:
        payout.failure_reason = f"Unknown outcome, reconcile with provider: {result.error}"
        payout.metadata_ = {**(payout.metadata_ or {}), "unknown_outcome": True}
        db.session.commit()
        logger.error(f"Payout {payout_id} outcome unknown: {result.error}")
        raise UnknownOutcomeError("Payout request outcome unknown", payout_id=payout_id)

    if not result.ok:
        payout.status = "failed"
        payout.failure_reason = result.raw_body or f"HTTP {result.status_code}"
        log_financial_event(
            "payout_failed", "vendor_payout", payout.id, amount=payout.amount,
            metadata={"provider_status": result.status_code},
        )
        db.session.commit()
        logger.error(f"Payout {payout_id} rejected: {result.status_code}")
        raise ProviderError(
            "Payout rejected by provider",
            status_code=result.status_code,
            raw_body=result.raw_body,
        )

    payout.payout_reference = _payout_reference(result.data) or payout.id
    payout.metadata_ = {**(payout.metadata_ or {}), "provider_response": result.data}
    log_financial_event(
        "payout_initiated", "vendor_payout", payout.id, amount=payout.amount,
        metadata={"payout_reference": payout.payout_reference, "vendor_id": payout.vendor_id},
    )
    db.session.commit()

    logger.info(f"Payout {payout_id} initiated, reference {payout.payout_reference}")
    return {
        "success": True,
        "payout_id": payout.id,
        "payout_reference": payout.payout_reference,
        "status": payout.status,
    }


# ──────────────────────────────────────────────
# Dispatch
# ──────────────────────────────────────────────

def _run_payout(app, payout_id):
    """Process a payout in a background thread. Never raises."""
    with app.app_context():
        try:
            process_payout(payout_id)
        except SettlementError as e:
            logger.warning(f"Background payout {payout_id} did not complete: {e.message}")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Background payout {payout_id} crashed: {e}", exc_info=True)
        finally:
            db.session.remove()


def dispatch_payout(payout_id):
    """Fire-and-forget payout trigger used after an escrow release.

    Runs in a daemon thread when PAYOUT_DISPATCH_ASYNC is on, inline
    otherwise. Errors are logged; the reconciliation job picks up
    anything left pending.
    """
    app = current_app._get_current_object()
    if app.config.get("PAYOUT_DISPATCH_ASYNC", True):
        thread = threading.Thread(target=_run_payout, args=(app, payout_id))
        thread.daemon = True
        thread.start()
        return

    try:
        process_payout(payout_id)
    except SettlementError as e:
        logger.warning(f"Payout {payout_id} did not complete: {e.message}")


def reconcile_pending_payouts(older_than_minutes=None):
    """Re-process payouts left pending past the reconciliation window.

    Returns {"processed": n, "failed": n, "errors": [...]}.
    """
    minutes = older_than_minutes or current_app.config.get("PAYOUT_RECONCILE_AFTER_MINUTES", 15)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)

    stale = (
        VendorPayout.query
        .filter(VendorPayout.status == "pending")
        .filter(
            or_(
                VendorPayout.last_dispatched_at < cutoff,
                (VendorPayout.last_dispatched_at.is_(None))
                & (VendorPayout.created_at < cutoff),
            )
        )
        .order_by(VendorPayout.created_at)
        .all()
    )

    results = {"processed": 0, "failed": 0, "errors": []}
    for payout in stale:
        payout_id = payout.id
        try:
            outcome = process_payout(payout_id)
            if outcome.get("success"):
                results["processed"] += 1
        except SettlementError as e:
            results["failed"] += 1
            results["errors"].append({"payout_id": payout_id, "error": e.message})

    if stale:
        logger.info(
            f"Payout reconciliation: {results['processed']} processed, "
            f"{results['failed']} failed out of {len(stale)} stale"
        )
    return results


# ──────────────────────────────────────────────
# Webhook outcomes
# ──────────────────────────────────────────────

def apply_payout_outcome(payout, outcome, reason=None, payload=None):
    """Record a provider-confirmed payout outcome ("completed" or "failed").

    Terminal payouts are left alone. Adds rows to the session; the caller
    commits. Returns True if the payout changed.
    """
    if payout.status in ("completed", "failed"):
        logger.info(f"Payout {payout.id} already {payout.status}, ignoring {outcome}")
        return False

    now = datetime.now(timezone.utc)
    if payload is not None:
        payout.metadata_ = {**(payout.metadata_ or {}), "webhook": payload}

    if outcome == "completed":
        payout.status = "completed"
        payout.completed_at = now
        payout.failure_reason = None
        log_financial_event(
            "payout_completed", "vendor_payout", payout.id, amount=payout.amount,
            metadata={"payout_reference": payout.payout_reference},
        )
        notify_vendor_owner(
            payout.vendor_id, "payout", "Payout completed",
            f"Your payout of {payout.amount} {payout.currency} has been completed.",
            {"payout_id": payout.id, "order_id": payout.order_id},
        )
    else:
        payout.status = "failed"
        payout.failure_reason = reason or "Payout failed"
        log_financial_event(
            "payout_failed", "vendor_payout", payout.id, amount=payout.amount,
            metadata={"payout_reference": payout.payout_reference, "reason": payout.failure_reason},
        )
        notify_vendor_owner(
            payout.vendor_id, "payout", "Payout failed",
            f"Your payout for order {payout.order_id} failed: {payout.failure_reason}",
            {"payout_id": payout.id, "order_id": payout.order_id},
        )

    logger.info(f"Payout {payout.id} marked {payout.status} by webhook")
    return True
