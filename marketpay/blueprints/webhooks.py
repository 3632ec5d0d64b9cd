"""Webhooks blueprint — /webhooks/*

Receives provider webhooks. Raw body is required for signature
verification, so the body is read as bytes before anything parses it.

Route Map:
  POST /webhooks/tj                 — Payment confirmations (X-TJ-Signature)
  POST /webhooks/vesicash/payouts   — Payout status updates (X-Vesicash-Signature)
"""

import logging

from flask import Blueprint, jsonify, request

from marketpay.extensions import limiter
from marketpay.services.webhook_service import handle_payment_webhook, handle_payout_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


def _respond(status, message):
    if status == 200:
        return message, 200, {"Content-Type": "text/plain"}
    return jsonify({"error": message}), status


@webhooks_bp.route("/tj", methods=["POST"])
@limiter.limit("300 per minute")
def tj_webhook():
    """Receive and process TJ payment webhooks.

    1. Get raw body (required for signature verification)
    2. Verify X-TJ-Signature with TJ_WEBHOOK_SECRET
    3. Pass to handle_payment_webhook (idempotent via webhook_processing_log)
    4. Return "ok" to acknowledge receipt
    """
    raw_body = request.get_data()
    signature = request.headers.get("X-TJ-Signature")

    if not signature:
        logger.warning("TJ webhook received without X-TJ-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    status, message = handle_payment_webhook(raw_body, signature, provider="tj")
    if status == 200:
        # Duplicates are acknowledged the same way as first deliveries
        return _respond(200, "ok")
    return _respond(status, message)


@webhooks_bp.route("/vesicash/payouts", methods=["POST"])
@limiter.limit("300 per minute")
def vesicash_payout_webhook():
    raw_body = request.get_data()
    signature = request.headers.get("X-Vesicash-Signature")

    if not signature:
        logger.warning("Payout webhook received without X-Vesicash-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    status, message = handle_payout_webhook(raw_body, signature)
    if status == 200:
        return _respond(200, "ok")
    return _respond(status, message)
