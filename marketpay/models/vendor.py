"""Vendor and product models.

Only the parts the payment pipeline touches: the vendor's owner (for
notifications) and payout recipient, and the product's category (for
commission resolution).
"""

import uuid

from marketpay.extensions import db


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    owner_id = db.Column(db.String(36), nullable=True)  # auth user id
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # payout_recipient_id lives here once the vendor is onboarded
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    orders = db.relationship("Order", back_populates="vendor", lazy="dynamic")

    @property
    def payout_recipient_id(self):
        return (self.metadata_ or {}).get("payout_recipient_id")

    def __repr__(self):
        return f"<Vendor {self.name}>"


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    category_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<Product {self.name}>"
