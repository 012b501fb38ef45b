"""
Ledger store: typed access to the local mirror of provider state.

All writes that can race (two webhooks, a webhook and an API call) go through
natural-key upserts (``INSERT ... ON CONFLICT DO UPDATE``) so concurrent writers
converge on one row. The store flushes but never commits; the caller owns the
transaction boundary.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from subledger.models import (
    Customer,
    Payment,
    Refund,
    ScheduledPlanChange,
    Subscription,
    SubscriptionItem,
    UsageRecord,
)
from subledger.providers.base import KEEP, CustomerSnapshot, ItemSnapshot, SubscriptionSnapshot
from subledger.utils.helpers import jsonable, utcnow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

# Snapshot attribute -> Subscription column key
_SNAPSHOT_FIELDS = (
    "status",
    "plan_id",
    "start_date",
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "cancel_at_period_end",
    "cancellation_reason",
)

_JSON_KEYS = frozenset({"pause_collection", "pending_update", "metadata_json", "raw"})


class LedgerStore:
    def __init__(self, session, placeholder_email: str = "unknown@example.com",
                 placeholder_name: str = "Unknown Customer"):
        self.session = session
        self.placeholder_email = placeholder_email
        self.placeholder_name = placeholder_name

    # ----- plumbing -----
    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def _upsert(self, model, index_elements: Tuple[str, ...], values: Dict[str, Any],
                update_keys: Optional[Iterable[str]] = None) -> None:
        table = model.__table__
        dialect = self.session.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"natural-key upsert not available for dialect {dialect!r}")

        # values are keyed by mapped attribute name; metadata_json maps to the "metadata" column
        columns = model.__mapper__.columns
        row = {
            columns[k]: (sa.null() if v is None and k in _JSON_KEYS else v)
            for k, v in values.items()
        }
        stmt = insert(table).values(row)
        keys = list(update_keys) if update_keys is not None else [k for k in values if k not in index_elements]
        set_ = {columns[k]: stmt.excluded[columns[k].key] for k in keys}
        if "updated_at" in table.c:
            set_[table.c.updated_at] = func.now()
        stmt = stmt.on_conflict_do_update(index_elements=list(index_elements), set_=set_)
        self.session.execute(stmt)

    # ----- customers -----
    def find_customer(self, external_id: Optional[str], provider: str) -> Optional[Customer]:
        if not external_id:
            return None
        return self.session.execute(
            sa.select(Customer)
            .where(Customer.external_id == external_id, Customer.provider == provider)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def upsert_customer(self, provider: str, snapshot: CustomerSnapshot) -> Customer:
        values: Dict[str, Any] = {"external_id": snapshot.external_id, "provider": provider}
        update_keys: List[str] = []
        for key in ("email", "name", "default_payment_method"):
            value = getattr(snapshot, key)
            if value is not None:
                values[key] = value
                update_keys.append(key)
        values.setdefault("email", self.placeholder_email)
        values.setdefault("name", self.placeholder_name)
        self._upsert(Customer, ("external_id", "provider"), values, update_keys=update_keys)
        return self.find_customer(snapshot.external_id, provider)

    def ensure_customer(self, provider: str, external_id: Optional[str]) -> Optional[Customer]:
        """Existing row, or a placeholder the next customer read back-fills."""
        if not external_id:
            return None
        existing = self.find_customer(external_id, provider)
        if existing is not None:
            return existing
        logger.info("ledger.customer.placeholder", extra={"provider": provider, "customer_id": external_id})
        return self.upsert_customer(provider, CustomerSnapshot(external_id=external_id))

    def is_placeholder(self, customer: Customer) -> bool:
        return customer.email == self.placeholder_email

    def update_customer_fields(self, customer: Customer, **fields) -> Customer:
        for key, value in fields.items():
            if value is not None:
                setattr(customer, key, value)
        self.session.flush()
        return customer

    def delete_customer(self, provider: str, external_id: str) -> bool:
        customer = self.find_customer(external_id, provider)
        if customer is None:
            return False
        self.session.delete(customer)
        self.session.flush()
        return True

    # ----- subscriptions -----
    def find_subscription(self, external_id: Optional[str], provider: str) -> Optional[Subscription]:
        if not external_id:
            return None
        return self.session.execute(
            sa.select(Subscription)
            .where(Subscription.external_id == external_id, Subscription.provider == provider)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def subscriptions_for_customer(self, provider: str, customer_external_id: str) -> List[Subscription]:
        return list(self.session.execute(
            sa.select(Subscription)
            .join(Customer, Subscription.customer_id == Customer.id)
            .where(Customer.external_id == customer_external_id, Customer.provider == provider)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        ).scalars())

    def upsert_subscription(self, provider: str, snapshot: SubscriptionSnapshot, *,
                            customer: Optional[Customer] = None,
                            synced_at: Optional[datetime] = None,
                            **overrides) -> Tuple[Subscription, bool]:
        """
        Merge ``snapshot`` into the row keyed by (external_id, provider).

        Fields the snapshot does not report (None, or KEEP for pause_collection) keep
        their stored value. ``overrides`` are written as given, None included.
        Returns (row, created).
        """
        existed = self.find_subscription(snapshot.external_id, provider) is not None

        values: Dict[str, Any] = {"external_id": snapshot.external_id, "provider": provider}
        for key in _SNAPSHOT_FIELDS:
            value = getattr(snapshot, key)
            if value is not None:
                values[key] = value
        if snapshot.pause_collection is not KEEP:
            values["pause_collection"] = snapshot.pause_collection
        if snapshot.metadata is not None:
            values["metadata_json"] = snapshot.metadata
        if snapshot.raw is not None:
            values["raw"] = jsonable(snapshot.raw)
        if customer is not None:
            values["customer_id"] = customer.id
        if synced_at is not None:
            values["synced_at"] = synced_at
        values.update(overrides)
        values.setdefault("status", "incomplete")

        update_keys = [k for k in values if k not in ("external_id", "provider")]
        if existed and "status" not in overrides and snapshot.status is None:
            update_keys.remove("status")
        self._upsert(Subscription, ("external_id", "provider"), values, update_keys=update_keys)

        sub = self.find_subscription(snapshot.external_id, provider)
        if snapshot.items is not None:
            self.sync_items(sub, snapshot.items)
        return sub, not existed

    def set_fields(self, subscription: Subscription, **fields) -> Subscription:
        for key, value in fields.items():
            setattr(subscription, key, value)
        subscription.updated_at = utcnow()
        self.session.flush()
        return subscription

    # ----- items -----
    def sync_items(self, subscription: Subscription, items: List[ItemSnapshot]) -> None:
        """Upsert reported items and drop the ones the provider no longer lists."""
        seen = []
        for item in items:
            if not item.external_id:
                continue
            seen.append(item.external_id)
            self._upsert(
                SubscriptionItem,
                ("subscription_id", "external_item_id"),
                {
                    "subscription_id": subscription.id,
                    "external_item_id": item.external_id,
                    "price_id": item.price_id,
                    "quantity": item.quantity or 1,
                },
            )
        stale = sa.delete(SubscriptionItem).where(SubscriptionItem.subscription_id == subscription.id)
        if seen:
            stale = stale.where(SubscriptionItem.external_item_id.notin_(seen))
        self.session.execute(stale)
        self.session.expire(subscription, ["items"])

    def find_item(self, external_item_id: str, provider: str) -> Optional[SubscriptionItem]:
        return self.session.execute(
            sa.select(SubscriptionItem)
            .join(Subscription, SubscriptionItem.subscription_id == Subscription.id)
            .where(SubscriptionItem.external_item_id == external_item_id, Subscription.provider == provider)
        ).scalar_one_or_none()

    # ----- usage -----
    def record_usage(self, item: SubscriptionItem, quantity: int, action: str,
                     timestamp: Optional[datetime] = None, metadata: Optional[dict] = None) -> UsageRecord:
        record = UsageRecord(
            subscription_id=item.subscription_id,
            item_id=item.id,
            quantity=int(quantity),
            action=action,
            timestamp=timestamp or utcnow(),
            metadata_json=metadata,
        )
        self.session.add(record)
        self.session.flush()
        return record

    # ----- payments -----
    def find_payment(self, transaction_id: Optional[str], provider: str) -> Optional[Payment]:
        if not transaction_id:
            return None
        return self.session.execute(
            sa.select(Payment)
            .where(Payment.transaction_id == transaction_id, Payment.provider == provider)
            .order_by(Payment.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record_payment(self, provider: str, *, transaction_id: Optional[str], status: str,
                       amount: Optional[int] = None, currency: Optional[str] = None,
                       customer: Optional[Customer] = None, subscription: Optional[Subscription] = None,
                       description: Optional[str] = None, metadata: Optional[dict] = None) -> Payment:
        # Redelivered payment notifications update the row rather than duplicating it
        payment = self.find_payment(transaction_id, provider)
        if payment is None:
            payment = Payment(transaction_id=transaction_id, provider=provider)
            self.session.add(payment)
        payment.status = status
        if amount is not None:
            payment.amount = int(amount)
        if currency:
            payment.currency = currency.upper()
        if customer is not None:
            payment.customer_id = customer.id
        if subscription is not None:
            payment.subscription_id = subscription.id
        if description:
            payment.description = description
        if metadata:
            payment.metadata_json = jsonable(metadata)
        self.session.flush()
        return payment

    def record_refund(self, provider: str, *, refund_id: str, transaction_id: str, status: str,
                      amount: Optional[int] = None, reason: Optional[str] = None,
                      metadata: Optional[dict] = None) -> Refund:
        payment = self.find_payment(transaction_id, provider)
        refund = Refund(
            refund_id=refund_id,
            payment_id=payment.id if payment else None,
            transaction_id=transaction_id,
            provider=provider,
            amount=amount,
            status=status,
            reason=reason,
            metadata_json=jsonable(metadata) if metadata else None,
        )
        self.session.add(refund)
        if payment is not None and amount is None:
            payment.status = "refunded"
        self.session.flush()
        return refund

    # ----- scheduled plan changes -----
    def add_scheduled_change(self, *, subscription_external_id: str, provider: str,
                             from_plan_id: Optional[str], to_plan_id: str, scheduled_at: datetime,
                             metadata: Optional[dict] = None) -> ScheduledPlanChange:
        change = ScheduledPlanChange(
            subscription_external_id=subscription_external_id,
            provider=provider,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            scheduled_at=scheduled_at,
            status="pending",
            metadata_json=jsonable(metadata) if metadata else None,
        )
        self.session.add(change)
        self.session.flush()
        return change

    def pending_scheduled_changes(self, due_before: Optional[datetime] = None) -> List[ScheduledPlanChange]:
        stmt = sa.select(ScheduledPlanChange).where(ScheduledPlanChange.status == "pending")
        if due_before is not None:
            stmt = stmt.where(ScheduledPlanChange.scheduled_at <= due_before)
        return list(self.session.execute(stmt.order_by(ScheduledPlanChange.scheduled_at)).scalars())

    def complete_scheduled_change(self, change_id: Optional[int]) -> Optional[ScheduledPlanChange]:
        change = self.session.get(ScheduledPlanChange, change_id) if change_id else None
        if change is None or change.status != "pending":
            return None
        change.status = "completed"
        change.executed_at = utcnow()
        self.session.flush()
        return change
