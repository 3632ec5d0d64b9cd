"""Tests for the webhooks blueprint and webhook processing.

Covers:
- Signature verification (missing, invalid, valid)
- Malformed bodies rejected before any ledger lookup
- Event parsing precedence
- Idempotent processing (duplicates are no-ops)
- Payment success: payment/order status, inventory commit, notifications
- Payment failure: inventory released
- Late success after the sweeper cancelled the order (resell or review)
- Payment resolution fallbacks and 404 for unknown payments
- Failed ledger entries are reprocessed on redelivery
- Payout webhook completion/failure
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from marketpay.extensions import db
from marketpay.models.audit import FinancialAuditLog
from marketpay.models.escrow import EscrowRelease, VendorPayout
from marketpay.models.inventory import InventoryItem
from marketpay.models.notification import Notification
from marketpay.models.order import Order
from marketpay.models.payment import Payment
from marketpay.models.webhook_log import WebhookProcessingLog
from marketpay.services.inventory_service import reserve_inventory
from marketpay.services.sweeper_service import sweep_expired_reservations
from marketpay.services.webhook_service import (
    map_payment_status,
    map_payout_status,
    parse_payment_event,
    verify_signature,
)

TJ_SECRET = "whsec_tj_test"
VESICASH_SECRET = "whsec_vesicash_test"


def _initiated_payment(seed_data, session_id="sess_1"):
    """Reserve stock and create an initiated payment for O1."""
    reserve_inventory(seed_data["order_id"])
    order = db.session.get(Order, seed_data["order_id"])
    order.status = "initiated"
    payment = Payment(
        order_id=order.id,
        vendor_id=order.vendor_id,
        provider="tj",
        merchant_reference="PAY-O1-1700000000000-1",
        provider_session_id=session_id,
        checkout_url=f"https://pay.tj.test/{session_id}",
        amount=order.total,
        currency=order.currency,
        status="initiated",
    )
    db.session.add(payment)
    db.session.commit()
    return payment.id


def _event(event_id="evt_1", status="success", **data):
    body = {"id": event_id, "event": "payment.updated", "data": {"status": status}}
    body["data"].update(data)
    return json.dumps(body)


def _post_tj(client, body, sign, secret=TJ_SECRET):
    return client.post(
        "/webhooks/tj",
        data=body,
        content_type="application/json",
        headers={"X-TJ-Signature": sign(body, secret)},
    )


class TestSignature:
    """Tests for webhook signature validation."""

    def test_missing_signature_returns_400(self, client, seed_data):
        resp = client.post("/webhooks/tj", data="{}", content_type="application/json")
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    def test_invalid_signature_returns_400(self, client, seed_data):
        resp = client.post(
            "/webhooks/tj",
            data=_event(),
            content_type="application/json",
            headers={"X-TJ-Signature": "deadbeef"},
        )
        assert resp.status_code == 400
        assert WebhookProcessingLog.query.count() == 0

    def test_signature_with_wrong_secret_rejected(self, client, seed_data, sign):
        resp = _post_tj(client, _event(), sign, secret="other-secret")
        assert resp.status_code == 400

    def test_verify_signature_helper(self, sign):
        body = b'{"id": "evt"}'
        assert verify_signature(body, sign(body, "s3cret"), "s3cret") is True
        assert verify_signature(body, sign(body, "s3cret").upper(), "s3cret") is True
        assert verify_signature(body, sign(body, "s3cret"), "") is False
        assert verify_signature(body, None, "s3cret") is False

    def test_malformed_json_returns_400(self, client, seed_data, sign):
        resp = _post_tj(client, "{not json", sign)
        assert resp.status_code == 400
        assert WebhookProcessingLog.query.count() == 0

    def test_missing_event_id_returns_400(self, client, seed_data, sign):
        resp = _post_tj(client, json.dumps({"data": {"status": "success"}}), sign)
        assert resp.status_code == 400


class TestEventParsing:
    """Tests for parse_payment_event and status mapping."""

    def test_precedence(self):
        event = parse_payment_event({
            "event_id": "evt_b",
            "type": "payment.completed",
            "data": {
                "provider_session_id": "sess_b",
                "reference": "ref_ignored",
                "transaction_id": "txn_b",
                "id": "data_id",
                "metadata": {"order_reference": "O9"},
            },
        })
        assert event.event_id == "evt_b"
        assert event.event_type == "payment.completed"
        assert event.session_id == "sess_b"
        assert event.payment_id == "txn_b"
        assert event.order_reference == "O9"
        # status only falls back to "event", never to "type"
        assert event.status is None

    def test_data_id_is_last_resort_event_id(self):
        event = parse_payment_event({"data": {"id": "pay_9", "status": "paid"}})
        assert event.event_id == "pay_9"
        assert event.payment_id == "pay_9"

    def test_status_mapping(self):
        assert map_payment_status("SUCCEEDED") == "succeeded"
        assert map_payment_status("payment.completed") == "succeeded"
        assert map_payment_status("declined") == "failed"
        assert map_payment_status("cancelled") == "failed"
        assert map_payment_status("processing") is None
        assert map_payment_status(None) is None
        # outside the known vocabulary -> still pending
        assert map_payment_status("approved") is None
        assert map_payment_status("error") is None

    def test_payout_status_mapping(self):
        assert map_payout_status("successful") == "completed"
        assert map_payout_status("reversed") == "failed"
        assert map_payout_status("queued") is None


class TestPaymentSuccess:
    """Tests for a successful payment webhook."""

    def test_success_marks_paid_and_commits_stock(self, client, seed_data, sign):
        payment_id = _initiated_payment(seed_data)

        resp = _post_tj(client, _event(session_id="sess_1", payment_id="pay_123"), sign)

        assert resp.status_code == 200
        assert resp.data == b"ok"
        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        order = db.session.get(Order, seed_data["order_id"])
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert payment.status == "succeeded"
        assert payment.provider_payment_id == "pay_123"
        assert order.status == "paid"
        assert (stock.quantity, stock.reserved) == (4, 0)

        entry = WebhookProcessingLog.query.filter_by(webhook_id="evt_1").one()
        assert entry.status == "success"
        assert entry.processing_duration_ms is not None

    def test_success_notifies_customer_and_vendor(self, client, seed_data, sign):
        _initiated_payment(seed_data)
        _post_tj(client, _event(session_id="sess_1", payment_id="pay_123"), sign)

        db.session.expire_all()
        user_note = Notification.query.filter_by(user_id=seed_data["user_id"]).one()
        vendor_note = Notification.query.filter_by(user_id=seed_data["owner_id"]).one()
        assert (user_note.type, user_note.title) == ("payment", "Payment update")
        assert (vendor_note.type, vendor_note.title) == ("vendor_payment", "Order payment")

    def test_duplicate_event_is_noop(self, client, seed_data, sign):
        _initiated_payment(seed_data)
        body = _event(session_id="sess_1", payment_id="pay_123")

        first = _post_tj(client, body, sign)
        second = _post_tj(client, body, sign)

        assert first.status_code == 200
        assert second.status_code == 200
        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert (stock.quantity, stock.reserved) == (4, 0)
        assert Notification.query.count() == 2
        assert WebhookProcessingLog.query.count() == 1

    def test_second_success_event_for_same_payment(self, client, seed_data, sign):
        """A different event id for an already-succeeded payment changes nothing."""
        _initiated_payment(seed_data)
        _post_tj(client, _event("evt_1", session_id="sess_1", payment_id="pay_123"), sign)
        resp = _post_tj(client, _event("evt_2", session_id="sess_1", payment_id="pay_123"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert stock.quantity == 4
        assert Notification.query.count() == 2

    def test_resolves_by_order_reference(self, client, seed_data, sign):
        payment_id = _initiated_payment(seed_data)
        resp = _post_tj(client, _event(order_reference="O1", transaction_id="txn_7"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        payment = db.session.get(Payment, payment_id)
        assert payment.status == "succeeded"
        assert payment.provider_payment_id == "txn_7"

    def test_unknown_payment_returns_404(self, client, seed_data, sign):
        resp = _post_tj(client, _event(session_id="sess_unknown"), sign)

        assert resp.status_code == 404
        entry = WebhookProcessingLog.query.filter_by(webhook_id="evt_1").one()
        assert entry.status == "failed"

    def test_pending_status_leaves_payment_initiated(self, client, seed_data, sign):
        payment_id = _initiated_payment(seed_data)
        resp = _post_tj(client, _event(status="processing", session_id="sess_1"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "initiated"
        assert db.session.get(Order, seed_data["order_id"]).status == "initiated"


class TestPaymentFailure:
    """Tests for a failed payment webhook."""

    def test_failure_releases_stock(self, client, seed_data, sign):
        payment_id = _initiated_payment(seed_data)

        resp = _post_tj(client, _event(status="declined", session_id="sess_1"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert db.session.get(Payment, payment_id).status == "failed"
        assert db.session.get(Order, seed_data["order_id"]).status == "failed"
        assert (stock.quantity, stock.reserved) == (5, 0)

    def test_failure_after_success_does_not_downgrade(self, client, seed_data, sign):
        payment_id = _initiated_payment(seed_data)
        _post_tj(client, _event("evt_ok", session_id="sess_1", payment_id="pay_1"), sign)
        _post_tj(client, _event("evt_fail", status="failed", session_id="sess_1"), sign)

        db.session.expire_all()
        assert db.session.get(Payment, payment_id).status == "succeeded"
        assert db.session.get(Order, seed_data["order_id"]).status == "paid"


class TestLatePayment:
    """A success webhook arriving after the sweeper cancelled the order."""

    def _expire_and_sweep(self, seed_data):
        payment_id = _initiated_payment(seed_data)
        order = db.session.get(Order, seed_data["order_id"])
        order.expires_at = datetime.now(timezone.utc) - timedelta(minutes=5)
        db.session.commit()
        assert sweep_expired_reservations()["cancelled"] == 1
        return payment_id

    def test_sells_from_available_stock(self, client, seed_data, sign):
        payment_id = self._expire_and_sweep(seed_data)

        resp = _post_tj(client, _event(session_id="sess_1", payment_id="pay_late"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert db.session.get(Payment, payment_id).status == "succeeded"
        assert db.session.get(Order, seed_data["order_id"]).status == "paid"
        assert (stock.quantity, stock.reserved) == (4, 0)

    def test_redelivery_does_not_sell_twice(self, client, seed_data, sign):
        self._expire_and_sweep(seed_data)
        _post_tj(client, _event("evt_1", session_id="sess_1", payment_id="pay_late"), sign)
        _post_tj(client, _event("evt_2", session_id="sess_1", payment_id="pay_late"), sign)

        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert stock.quantity == 4

    def test_sold_out_goes_to_review(self, client, seed_data, sign):
        payment_id = self._expire_and_sweep(seed_data)
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        stock.quantity = 0
        db.session.commit()

        resp = _post_tj(client, _event(session_id="sess_1", payment_id="pay_late"), sign)

        assert resp.status_code == 200
        db.session.expire_all()
        stock = db.session.get(InventoryItem, seed_data["inventory_id"])
        assert db.session.get(Payment, payment_id).status == "succeeded"
        assert db.session.get(Order, seed_data["order_id"]).status == "needs_review"
        assert (stock.quantity, stock.reserved) == (0, 0)
        audit = FinancialAuditLog.query.filter_by(event_type="payment_needs_review").one()
        assert audit.entity_id == seed_data["order_id"]
        note = Notification.query.filter_by(user_id=seed_data["user_id"], type="payment").one()
        assert "no longer available" in note.message


class TestProcessingErrors:
    """A processing error is recorded and retried on redelivery."""

    @patch("marketpay.services.webhook_service.commit_order_inventory")
    def test_error_returns_500_and_redelivery_succeeds(self, mock_commit, client, seed_data, sign):
        _initiated_payment(seed_data)
        body = _event(session_id="sess_1", payment_id="pay_123")
        mock_commit.side_effect = RuntimeError("db hiccup")

        first = _post_tj(client, body, sign)

        assert first.status_code == 500
        db.session.expire_all()
        entry = WebhookProcessingLog.query.filter_by(webhook_id="evt_1").one()
        assert entry.status == "failed"
        assert "db hiccup" in entry.error_message
        assert db.session.get(Order, seed_data["order_id"]).status == "initiated"

        mock_commit.side_effect = None
        mock_commit.return_value = 1
        second = _post_tj(client, body, sign)

        assert second.status_code == 200
        db.session.expire_all()
        entry = WebhookProcessingLog.query.filter_by(webhook_id="evt_1").one()
        assert entry.status == "success"
        assert entry.attempts == 2
        assert db.session.get(Order, seed_data["order_id"]).status == "paid"


class TestPayoutWebhook:
    """Tests for /webhooks/vesicash/payouts."""

    def _processing_payout(self, seed_data):
        release = EscrowRelease(
            order_id=seed_data["order_id"], status="completed", trigger="manual",
        )
        db.session.add(release)
        db.session.flush()
        payout = VendorPayout(
            vendor_id=seed_data["vendor_id"],
            escrow_release_id=release.id,
            order_id=seed_data["order_id"],
            amount=Decimal("90.00"),
            currency="ZMW",
            status="processing",
            payout_reference="po_ref_1",
        )
        db.session.add(payout)
        db.session.commit()
        return payout.id

    def _post(self, client, sign, payload):
        body = json.dumps(payload)
        return client.post(
            "/webhooks/vesicash/payouts",
            data=body,
            content_type="application/json",
            headers={"X-Vesicash-Signature": sign(body, VESICASH_SECRET)},
        )

    def test_completed(self, client, seed_data, sign):
        payout_id = self._processing_payout(seed_data)

        resp = self._post(client, sign, {
            "id": "pevt_1", "event": "payout.updated",
            "data": {"reference": "po_ref_1", "status": "successful"},
        })

        assert resp.status_code == 200
        db.session.expire_all()
        payout = db.session.get(VendorPayout, payout_id)
        assert payout.status == "completed"
        assert payout.completed_at is not None
        assert FinancialAuditLog.query.filter_by(event_type="payout_completed").count() == 1
        assert Notification.query.filter_by(user_id=seed_data["owner_id"], type="payout").count() == 1

    def test_failed_records_reason(self, client, seed_data, sign):
        payout_id = self._processing_payout(seed_data)

        self._post(client, sign, {
            "id": "pevt_2",
            "data": {"reference": "po_ref_1", "status": "reversed", "reason": "Account closed"},
        })

        db.session.expire_all()
        payout = db.session.get(VendorPayout, payout_id)
        assert payout.status == "failed"
        assert payout.failure_reason == "Account closed"

    def test_unknown_status_acknowledged_without_change(self, client, seed_data, sign):
        payout_id = self._processing_payout(seed_data)

        resp = self._post(client, sign, {
            "id": "pevt_3", "data": {"reference": "po_ref_1", "status": "queued"},
        })

        assert resp.status_code == 200
        db.session.expire_all()
        assert db.session.get(VendorPayout, payout_id).status == "processing"

    def test_unknown_payout_returns_404(self, client, seed_data, sign):
        resp = self._post(client, sign, {
            "id": "pevt_4", "data": {"reference": "nope", "status": "successful"},
        })
        assert resp.status_code == 404

    def test_bad_signature(self, client, seed_data):
        resp = client.post(
            "/webhooks/vesicash/payouts",
            data="{}",
            content_type="application/json",
            headers={"X-Vesicash-Signature": "bad"},
        )
        assert resp.status_code == 400
