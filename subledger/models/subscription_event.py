from sqlalchemy import func
from subledger.extensions import db
from .types import JSONType

EVENT_TYPES = (
    "created",
    "updated",
    "paused",
    "resumed",
    "cancelled",
    "plan_changed",
    "plan_change_scheduled",
    "payment_succeeded",
    "payment_failed",
)


class SubscriptionEvent(db.Model):
    """Append-only audit row. Rows are never updated or deleted by the engine."""

    __tablename__ = "subscription_events"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type = db.Column(db.String(100), nullable=False, index=True)
    status_from = db.Column(db.String(50), nullable=True)
    status_to = db.Column(db.String(50), nullable=True)
    data = db.Column(JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    subscription = db.relationship("Subscription", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status_from": self.status_from,
            "status_to": self.status_to,
            "data": self.data or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
