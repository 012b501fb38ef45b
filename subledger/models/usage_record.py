from sqlalchemy import func
from subledger.extensions import db
from .types import JSONType

USAGE_ACTIONS = ("increment", "set", "report")


class UsageRecord(db.Model):
    __tablename__ = "subscription_usage"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id = db.Column(
        db.Integer, db.ForeignKey("subscription_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(50), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    metadata_json = db.Column("metadata", JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<UsageRecord id={self.id} item_id={self.item_id} quantity={self.quantity} action={self.action!r}>"
