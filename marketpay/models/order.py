"""Order models.

- Order: a customer purchase intent, supplied by the checkout subsystem.
- OrderItem: one line item (product + quantity) of an order.

order.status lifecycle:
    pending -> initiated (payment session created, expiry set)
            -> paid | failed (payment webhook)
    paid    -> delivered (delivery confirmation)
    pending | initiated -> cancelled (expiry sweeper)
    cancelled -> paid (late payment, stock still available)
              -> needs_review (late payment, stock gone)
    paid | delivered -> refunded (full refund or reversal)
"""

import uuid
from datetime import datetime, timezone

from marketpay.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    STATUSES = [
        "pending", "initiated", "paid", "failed", "delivered", "cancelled",
        "needs_review", "refunded",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_reference = db.Column(db.String(64), unique=True, nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(
        db.String(20), nullable=False, default="pending"
    )  # see STATUSES
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    user_id = db.Column(
        db.String(36), nullable=True
    )  # null for guest orders until claimed
    customer_email = db.Column(db.String(255), nullable=True)
    email_verified = db.Column(db.Boolean, default=False, nullable=False)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    vendor = db.relationship("Vendor", back_populates="orders")
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "Payment", back_populates="order", lazy="dynamic"
    )

    @property
    def is_expired(self):
        """True once the payment window has passed."""
        if self.expires_at is None:
            return False
        expires = self.expires_at
        # SQLite returns naive datetimes; Postgres returns aware ones.
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) > expires

    def __repr__(self):
        return f"<Order {self.order_reference} ({self.status})>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id = db.Column(
        db.String(36), db.ForeignKey("products.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=True)
    position = db.Column(db.Integer, default=0, nullable=False)  # first item drives category commission

    # --- Relationships ---
    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def __repr__(self):
        return f"<OrderItem product={self.product_id} qty={self.quantity}>"
