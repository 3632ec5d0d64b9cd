"""Tests for TJ refunds, settlement and reversal.

Covers:
- Full refund: provider call without amount, order refunded, audit, notification
- Partial refunds in minor units, accumulating up to the payment amount
- Over-refunds, non-TJ and unconfirmed payments are refused
- Refunds refused after escrow release, escrow refused after a refund
- Refund timeout -> settlement_status unknown, further refunds blocked
- Settle (with optional amount) and reverse, repeat is a no-op
- POST /api/orders/<id>/refund and /settlement
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
import requests

from marketpay.errors import (
    OrderNotEligibleError,
    PaymentNotConfirmedError,
    ProviderError,
    UnknownOutcomeError,
    ValidationError,
)
from marketpay.extensions import db
from marketpay.models.audit import FinancialAuditLog
from marketpay.models.escrow import EscrowRelease
from marketpay.models.notification import Notification
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.services.escrow_service import release_escrow
from marketpay.services.refund_service import refund_payment, settle_payment

REQUEST = "marketpay.services.gateway_client.requests.request"


def _captured_payment(order_id, provider="tj", provider_payment_id="txn_42", order_status="paid"):
    order = db.session.get(Order, order_id)
    order.status = order_status
    payment = Payment(
        order_id=order.id,
        vendor_id=order.vendor_id,
        provider=provider,
        merchant_reference=f"PAY-{order.order_reference}-1",
        provider_session_id=f"sess_{order.order_reference}",
        provider_payment_id=provider_payment_id,
        amount=order.total,
        currency=order.currency,
        status="succeeded",
    )
    db.session.add(payment)
    db.session.commit()
    return payment.id


def _tj_ok(gateway_response, **data):
    return gateway_response(200, {"status": "success", "data": data})


class TestRefund:
    """Tests for refund_payment."""

    @patch(REQUEST)
    def test_full_refund(self, mock_request, seed_data, gateway_response):
        payment_id = _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response, refund_id="rf_1")

        result = refund_payment(seed_data["order_id"], reason="Damaged", actor_id="admin-1")

        method, url = mock_request.call_args[0]
        payload = mock_request.call_args[1]["json"]
        assert method == "POST"
        assert url == "https://tj.test/v1/transactions/txn_42/refund"
        assert payload == {"transactionId": "txn_42", "reason": "Damaged"}

        assert result["refunded"] == Decimal("100.00")
        assert result["remaining"] == Decimal("0.00")
        assert result["status"] == "refunded"

        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        assert payment.refunded_amount == Decimal("100.00")
        assert payment.settlement_status == "refunded"
        assert db.session.get(Order, seed_data["order_id"]).status == "refunded"

        audit = FinancialAuditLog.query.filter_by(event_type="payment_refunded").one()
        assert audit.entity_id == payment_id
        assert audit.actor_id == "admin-1"
        note = Notification.query.filter_by(user_id=seed_data["user_id"], type="refund").one()
        assert note.title == "Refund processed"
        assert note.message == "Your refund for order O1 has been processed successfully."

    @patch(REQUEST)
    def test_default_reason(self, mock_request, seed_data, gateway_response):
        _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        refund_payment(seed_data["order_id"])

        assert mock_request.call_args[1]["json"]["reason"] == "Customer refund request"

    @patch(REQUEST)
    def test_partial_refunds_accumulate(self, mock_request, seed_data, gateway_response):
        payment_id = _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        first = refund_payment(seed_data["order_id"], amount="30.50")
        assert mock_request.call_args[1]["json"]["amount"] == 3050
        assert first["status"] == "partially_refunded"
        assert db.session.get(Order, seed_data["order_id"]).status == "paid"

        second = refund_payment(seed_data["order_id"])
        # the remainder is sent as an explicit partial amount
        assert mock_request.call_args[1]["json"]["amount"] == 6950
        assert second["refunded"] == Decimal("69.50")
        assert second["status"] == "refunded"

        db.session.expire_all()
        assert db.session.get(Payment, payment_id).refunded_amount == Decimal("100.00")
        assert db.session.get(Order, seed_data["order_id"]).status == "refunded"
        assert FinancialAuditLog.query.filter_by(event_type="payment_refunded").count() == 2

        with pytest.raises(OrderNotEligibleError):
            refund_payment(seed_data["order_id"], amount="1.00")
        assert mock_request.call_count == 2

    @patch(REQUEST)
    def test_over_refund_rejected(self, mock_request, seed_data):
        _captured_payment(seed_data["order_id"])

        with pytest.raises(ValidationError):
            refund_payment(seed_data["order_id"], amount="100.01")
        with pytest.raises(ValidationError):
            refund_payment(seed_data["order_id"], amount="0")
        with pytest.raises(ValidationError):
            refund_payment(seed_data["order_id"], amount="ten")
        mock_request.assert_not_called()

    def test_vesicash_payment_rejected(self, seed_data):
        _captured_payment(seed_data["order_id"], provider="vesicash")
        with pytest.raises(ValidationError):
            refund_payment(seed_data["order_id"])

    def test_unconfirmed_payment_rejected(self, seed_data):
        _captured_payment(seed_data["order_id"], provider_payment_id=None)
        with pytest.raises(PaymentNotConfirmedError):
            refund_payment(seed_data["order_id"])

    @patch(REQUEST)
    def test_provider_rejection_changes_nothing(self, mock_request, seed_data, gateway_response):
        payment_id = _captured_payment(seed_data["order_id"])
        mock_request.return_value = gateway_response(422, {"message": "already refunded"})

        with pytest.raises(ProviderError):
            refund_payment(seed_data["order_id"])

        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        assert payment.refunded_amount == Decimal("0.00")
        assert payment.settlement_status is None
        assert Notification.query.count() == 0

    @patch(REQUEST)
    def test_timeout_marks_unknown_and_blocks(self, mock_request, seed_data):
        payment_id = _captured_payment(seed_data["order_id"])
        mock_request.side_effect = requests.Timeout("read timed out")

        with pytest.raises(UnknownOutcomeError):
            refund_payment(seed_data["order_id"])

        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        assert payment.settlement_status == "unknown"
        assert payment.refunded_amount == Decimal("0.00")
        assert FinancialAuditLog.query.filter_by(event_type="payment_refund_unknown").count() == 1

        with pytest.raises(UnknownOutcomeError):
            refund_payment(seed_data["order_id"])
        assert mock_request.call_count == 1


class TestRefundAndEscrow:
    """Refunds and escrow release exclude each other."""

    def test_refund_refused_after_release(self, seed_data):
        _captured_payment(seed_data["order_id"], order_status="delivered")
        db.session.add(EscrowRelease(
            order_id=seed_data["order_id"], status="completed", trigger="manual",
        ))
        db.session.commit()

        with pytest.raises(OrderNotEligibleError):
            refund_payment(seed_data["order_id"])
        with pytest.raises(OrderNotEligibleError):
            settle_payment(seed_data["order_id"], "reverse")

    @patch(REQUEST)
    def test_refund_allowed_after_failed_release(self, mock_request, seed_data, gateway_response):
        _captured_payment(seed_data["order_id"], order_status="delivered")
        db.session.add(EscrowRelease(
            order_id=seed_data["order_id"], status="failed", trigger="manual",
        ))
        db.session.commit()
        mock_request.return_value = _tj_ok(gateway_response)

        assert refund_payment(seed_data["order_id"])["status"] == "refunded"

    @patch(REQUEST)
    def test_release_refused_after_partial_refund(self, mock_request, seed_data, gateway_response):
        _captured_payment(seed_data["order_id"], order_status="delivered")
        mock_request.return_value = _tj_ok(gateway_response)
        refund_payment(seed_data["order_id"], amount="10.00")

        with pytest.raises(OrderNotEligibleError):
            release_escrow(seed_data["order_id"])
        assert EscrowRelease.query.count() == 0
        assert mock_request.call_count == 1


class TestSettlement:
    """Tests for settle_payment."""

    @patch(REQUEST)
    def test_settle_with_amount(self, mock_request, seed_data, gateway_response):
        payment_id = _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        result = settle_payment(seed_data["order_id"], "settle", amount="80.00")

        _, url = mock_request.call_args[0]
        assert url == "https://tj.test/v1/transactions/txn_42/settle"
        assert mock_request.call_args[1]["json"] == {"transactionId": "txn_42", "amount": 8000}
        assert result == {"payment_id": payment_id, "status": "settled", "already_processed": False}
        assert db.session.get(Order, seed_data["order_id"]).status == "paid"
        assert FinancialAuditLog.query.filter_by(event_type="payment_settled").count() == 1

    @patch(REQUEST)
    def test_reverse_ignores_amount_and_refunds_order(self, mock_request, seed_data, gateway_response):
        _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        settle_payment(seed_data["order_id"], "reverse", amount="50.00")

        _, url = mock_request.call_args[0]
        assert url == "https://tj.test/v1/transactions/txn_42/reverse"
        assert mock_request.call_args[1]["json"] == {"transactionId": "txn_42"}
        db.session.expire_all()
        assert db.session.get(Order, seed_data["order_id"]).status == "refunded"
        assert FinancialAuditLog.query.filter_by(event_type="payment_reversed").count() == 1
        note = Notification.query.filter_by(user_id=seed_data["user_id"], type="refund").one()
        assert note.title == "Payment reversed"

        with pytest.raises(OrderNotEligibleError):
            refund_payment(seed_data["order_id"])

    @patch(REQUEST)
    def test_repeat_is_noop(self, mock_request, seed_data, gateway_response):
        _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)
        settle_payment(seed_data["order_id"], "settle")

        again = settle_payment(seed_data["order_id"], "settle")

        assert again["already_processed"] is True
        assert mock_request.call_count == 1
        with pytest.raises(OrderNotEligibleError):
            settle_payment(seed_data["order_id"], "reverse")

    def test_invalid_action(self, seed_data):
        _captured_payment(seed_data["order_id"])
        with pytest.raises(ValidationError):
            settle_payment(seed_data["order_id"], "capture")


class TestRefundRoutes:
    """Tests for the refund and settlement routes."""

    @patch(REQUEST)
    def test_refund_route(self, mock_request, client, seed_data, api_headers, gateway_response):
        _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        resp = client.post(
            f"/api/orders/{seed_data['order_id']}/refund",
            json={"amount": "25.00", "reason": "Late delivery", "actor_id": "admin-1"},
            headers=api_headers,
        )

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["success"] is True
        assert body["refunded"] == "25.00"
        assert body["remaining"] == "75.00"
        assert body["status"] == "partially_refunded"

    def test_refund_route_requires_api_key(self, client, seed_data):
        resp = client.post(f"/api/orders/{seed_data['order_id']}/refund", json={})
        assert resp.status_code == 401

    def test_refund_unpaid_order_is_409(self, client, seed_data, api_headers):
        resp = client.post(
            f"/api/orders/{seed_data['order_id']}/refund", json={}, headers=api_headers,
        )
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "resource_state"

    @patch(REQUEST)
    def test_settlement_route(self, mock_request, client, seed_data, api_headers, gateway_response):
        _captured_payment(seed_data["order_id"])
        mock_request.return_value = _tj_ok(gateway_response)

        resp = client.post(
            f"/api/orders/{seed_data['order_id']}/settlement",
            json={"action": "settle"},
            headers=api_headers,
        )

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "settled"

    def test_settlement_route_bad_action_is_400(self, client, seed_data, api_headers):
        resp = client.post(
            f"/api/orders/{seed_data['order_id']}/settlement",
            json={"action": "capture"},
            headers=api_headers,
        )
        assert resp.status_code == 400
