import sqlalchemy as sa
from sqlalchemy import func, UniqueConstraint
from subledger.extensions import db
from .types import JSONType

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(50), nullable=False, index=True)
    event_id = db.Column(db.String(255), nullable=False, index=True)
    event_type = db.Column(db.String(255), nullable=False, index=True)
    payload = db.Column(JSONType, nullable=False)

    processing_status = db.Column(db.String(20), nullable=False, index=True, server_default=sa.text("'pending'"))
    error_message = db.Column(db.Text, nullable=True)

    delivery_count = db.Column(db.Integer, nullable=False, server_default=sa.text("1"))
    last_delivery_at = db.Column(db.DateTime(timezone=True), nullable=True)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent id={self.id} provider={self.provider!r} event_id={self.event_id!r} status={self.processing_status!r}>"
