import sqlalchemy as sa
from sqlalchemy import func
from subledger.extensions import db
from .types import JSONType


class ScheduledPlanChange(db.Model):
    """
    A plan change the provider cannot schedule itself.
    Rows stay 'pending' until an external scheduler executes them.
    """

    __tablename__ = "scheduled_plan_changes"

    id = db.Column(db.Integer, primary_key=True)
    subscription_external_id = db.Column(db.String(255), nullable=False, index=True)
    provider = db.Column(db.String(50), nullable=False)
    from_plan_id = db.Column(db.String(255), nullable=True)
    to_plan_id = db.Column(db.String(255), nullable=False)

    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, index=True, server_default=sa.text("'pending'"))
    metadata_json = db.Column("metadata", JSONType, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="ck_scheduled_plan_changes_status",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_external_id,
            "provider": self.provider,
            "from_plan_id": self.from_plan_id,
            "to_plan_id": self.to_plan_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "status": self.status,
        }
