"""Payment model.

One row per payment attempt (hosted payment page session) for an order.
payments.status is the source of truth for whether money was collected;
orders.status mirrors it for the storefront.

status: initiated -> succeeded | failed
        initiated -> cancelled (session rolled back, superseded or expired)

settlement_status (TJ only, null until an operator acts):
        partially_refunded -> refunded
        settled | reversed
        unknown (refund or settlement call timed out, reconcile by hand)
"""

import uuid

from marketpay.extensions import db


class Payment(db.Model):
    __tablename__ = "payments"

    STATUSES = ["initiated", "succeeded", "failed", "cancelled"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    provider = db.Column(db.String(30), nullable=False)  # tj | vesicash
    merchant_reference = db.Column(db.String(128), unique=True, nullable=False)
    provider_session_id = db.Column(
        db.String(255), nullable=True
    )  # null until the provider responds
    provider_payment_id = db.Column(
        db.String(255), nullable=True
    )  # set by the webhook; required for escrow release
    checkout_url = db.Column(db.String(1000), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="initiated"
    )  # initiated | succeeded | failed | cancelled
    refunded_amount = db.Column(
        db.Numeric(12, 2), nullable=False, default=0, server_default="0"
    )  # major units, never above amount
    settlement_status = db.Column(db.String(20), nullable=True)
    raw_payload = db.Column(db.JSON, nullable=True)  # last provider response / webhook body
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "provider", "provider_session_id", name="uq_payment_provider_session"
        ),
    )

    # --- Relationships ---
    order = db.relationship("Order", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.merchant_reference} ({self.status})>"
