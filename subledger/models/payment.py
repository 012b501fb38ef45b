from sqlalchemy import func
from subledger.extensions import db
from .types import JSONType


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(255), nullable=True, index=True)
    provider = db.Column(db.String(50), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)

    # Minor units (cents) as reported by the provider
    amount = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(10), nullable=True)
    status = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())


class Refund(db.Model):
    __tablename__ = "refunds"

    id = db.Column(db.Integer, primary_key=True)
    refund_id = db.Column(db.String(255), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True)
    # Provider id of what was refunded (payment intent / capture)
    transaction_id = db.Column(db.String(255), nullable=False)
    provider = db.Column(db.String(50), nullable=False)
    amount = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(50), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
