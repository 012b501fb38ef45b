import sqlalchemy as sa
from sqlalchemy import func, UniqueConstraint
from subledger.extensions import db
from .types import JSONType

# Superset across providers; a provider only ever emits the subset it supports
STATUSES = (
    "incomplete",
    "trialing",
    "active",
    "paused",
    "past_due",
    "canceled",
    "expired",
    "unpaid",
)
TERMINAL_STATUSES = frozenset({"canceled", "expired"})


def _iso(value):
    return value.isoformat() if value else None


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(255), nullable=False, index=True)
    provider = db.Column(db.String(50), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)

    plan_id = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=False, index=True, server_default=sa.text("'incomplete'"))

    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    trial_start = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    cancel_at_period_end = db.Column(db.Boolean, nullable=False, server_default=sa.false())
    cancellation_reason = db.Column(db.Text, nullable=True)

    # {"reason": ..., "resumes_at": ...} while paused, NULL otherwise
    pause_collection = db.Column(JSONType, nullable=True)
    # {"to_plan": ..., "scheduled_at": ..., ...} while a plan change is scheduled
    pending_update = db.Column(JSONType, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = db.Column("metadata", JSONType, nullable=True)
    # Last provider payload, for fields not normalized yet
    raw = db.Column(JSONType, nullable=True)

    # Provider-side time of the last applied state; older webhook snapshots are ignored
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    customer = db.relationship("Customer", back_populates="subscriptions")
    items = db.relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SubscriptionItem.id",
    )
    events = db.relationship(
        "SubscriptionEvent",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SubscriptionEvent.id",
    )

    __table_args__ = (
        UniqueConstraint("external_id", "provider", name="uq_subscriptions_external_id_provider"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.external_id,
            "ledger_id": self.id,
            "provider": self.provider,
            "customer_id": self.customer.external_id if self.customer else None,
            "plan_id": self.plan_id,
            "status": self.status,
            "start_date": _iso(self.start_date),
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "trial_start": _iso(self.trial_start),
            "trial_end": _iso(self.trial_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "cancellation_reason": self.cancellation_reason,
            "pause_collection": self.pause_collection,
            "pending_update": self.pending_update,
            "metadata": self.metadata_json or {},
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} external_id={self.external_id!r} status={self.status!r} plan_id={self.plan_id!r}>"


class SubscriptionItem(db.Model):
    __tablename__ = "subscription_items"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_item_id = db.Column(db.String(255), nullable=False, index=True)
    price_id = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, server_default=sa.text("1"))
    metadata_json = db.Column("metadata", JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    subscription = db.relationship("Subscription", back_populates="items")

    __table_args__ = (
        UniqueConstraint("subscription_id", "external_item_id", name="uq_subscription_items_sub_external"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.external_item_id,
            "price_id": self.price_id,
            "quantity": self.quantity,
        }
