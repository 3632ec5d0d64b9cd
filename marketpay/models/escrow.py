"""Escrow release and vendor payout models.

- EscrowRelease: one row per order (unique order_id). Inserting it is the
  serialization point for a release; its status is the only record of
  whether escrow left the provider.
      pending   claimed, provider call in flight
      completed funds released (terminal, repeat calls short-circuit)
      failed    provider rejected the release, safe to claim again
      unknown   provider timed out, needs operator reconciliation
- VendorPayout: one row per escrow release. Advanced by the payout
  processor and by the payout webhook.
      pending -> processing -> completed | failed
      pending -> on_hold (vendor not onboarded)
"""

import uuid

from marketpay.extensions import db


class EscrowRelease(db.Model):
    __tablename__ = "escrow_releases"

    STATUSES = ["pending", "completed", "failed", "unknown"]
    TRIGGERS = ["manual", "auto", "admin"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), unique=True, nullable=False
    )
    payment_id = db.Column(
        db.String(36), db.ForeignKey("payments.id"), nullable=True
    )
    provider_transaction_id = db.Column(db.String(255), nullable=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=True)
    vendor_amount = db.Column(db.Numeric(12, 2), nullable=True)
    platform_amount = db.Column(db.Numeric(12, 2), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True)
    trigger = db.Column(db.String(20), nullable=True)  # manual | auto | admin
    status = db.Column(
        db.String(20), nullable=False, default="pending"
    )  # pending | completed | failed | unknown
    failure_reason = db.Column(db.Text, nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    payout = db.relationship(
        "VendorPayout", back_populates="escrow_release", uselist=False
    )

    def __repr__(self):
        return f"<EscrowRelease order={self.order_id} ({self.status})>"


class VendorPayout(db.Model):
    __tablename__ = "vendor_payouts"

    STATUSES = ["pending", "processing", "completed", "failed", "on_hold"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    vendor_id = db.Column(
        db.String(36), db.ForeignKey("vendors.id"), nullable=False
    )
    escrow_release_id = db.Column(
        db.String(36),
        db.ForeignKey("escrow_releases.id"),
        unique=True,
        nullable=False,
    )
    order_id = db.Column(
        db.String(36), db.ForeignKey("orders.id"), nullable=False
    )
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="pending"
    )  # pending | processing | completed | failed | on_hold
    payout_reference = db.Column(db.String(255), nullable=True, index=True)
    failure_reason = db.Column(db.Text, nullable=True)
    dispatch_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    metadata_ = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    escrow_release = db.relationship("EscrowRelease", back_populates="payout")

    def __repr__(self):
        return f"<VendorPayout {self.amount} ({self.status})>"
