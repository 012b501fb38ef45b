from sqlalchemy import func, UniqueConstraint
from subledger.extensions import db


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(255), nullable=False, index=True)
    provider = db.Column(db.String(50), nullable=False, index=True)

    email = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    default_payment_method = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    subscriptions = db.relationship("Subscription", back_populates="customer", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("external_id", "provider", name="uq_customers_external_id_provider"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "provider": self.provider,
            "email": self.email,
            "name": self.name,
            "default_payment_method": self.default_payment_method,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Customer id={self.id} provider={self.provider!r} external_id={self.external_id!r}>"
