import sqlalchemy as sa
from sqlalchemy import func
from subledger.extensions import db


class Plan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.String(50), primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default=sa.text("'USD'"))
    billing_cycle = db.Column(db.String(20), nullable=False)

    stripe_product_id = db.Column(db.String(100), nullable=True)
    stripe_price_id = db.Column(db.String(100), nullable=True, index=True)
    paypal_plan_id = db.Column(db.String(100), nullable=True, index=True)

    sort_order = db.Column("order", db.Integer, nullable=False, server_default=sa.text("0"))
    is_active = db.Column(db.Boolean, nullable=False, server_default=sa.true(), index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    features = db.relationship(
        "PlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlanFeature.sort_order",
    )

    __table_args__ = (
        sa.CheckConstraint("billing_cycle IN ('monthly', 'yearly')", name="ck_subscription_plans_billing_cycle"),
    )

    def provider_price_id(self, provider: str):
        return {"stripe": self.stripe_price_id, "paypal": self.paypal_plan_id}.get(provider)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": float(self.price) if self.price is not None else None,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
            "stripe_price_id": self.stripe_price_id,
            "paypal_plan_id": self.paypal_plan_id,
            "order": self.sort_order,
            "features": [f.to_dict() for f in self.features],
        }


class PlanFeature(db.Model):
    __tablename__ = "plan_features"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.String(50), db.ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    included = db.Column(db.Boolean, nullable=False, server_default=sa.true())
    feature_limit = db.Column(db.Integer, nullable=True)
    units = db.Column(db.String(50), nullable=True)
    sort_order = db.Column("order", db.Integer, nullable=False, server_default=sa.text("0"))

    plan = db.relationship("Plan", back_populates="features")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "included": bool(self.included),
            "feature_limit": self.feature_limit,
            "units": self.units,
        }
