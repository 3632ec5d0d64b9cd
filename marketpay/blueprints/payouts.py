"""Payouts blueprint — /api/payouts/*

Route Map:
  POST /api/payouts/<payout_id>/process  — Send a pending payout to the provider
"""

from flask import Blueprint, jsonify

from marketpay.decorators import internal_api_key_required
from marketpay.services.payout_service import process_payout

payouts_bp = Blueprint("payouts", __name__, url_prefix="/api/payouts")


@payouts_bp.route("/<payout_id>/process", methods=["POST"])
@internal_api_key_required
def process(payout_id):
    result = process_payout(payout_id)
    status = 200 if result.get("success") else 409
    return jsonify(result), status
