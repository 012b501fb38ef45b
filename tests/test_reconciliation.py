from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError

from subledger.extensions import db
from subledger.models import Customer, Payment, Refund, Subscription, SubscriptionEvent, UsageRecord
from subledger.providers.base import CustomerSnapshot, SubscriptionSnapshot
from subledger.services.errors import ErrorKind
from subledger.services.reconciliation import ReconciliationService

from tests.fakes import FakeProvider


def _create(reconciler, provider="fake", **kw):
    params = {"customer_id": "cus_1", "price_id": "price_a"}
    params.update(kw)
    result = reconciler.create_subscription(provider, **params)
    assert result.success, result.message
    return result.data["subscription_id"]


def _row(external_id, provider="fake"):
    return db.session.execute(
        sa.select(Subscription).where(Subscription.external_id == external_id, Subscription.provider == provider)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _latest_event(sub):
    return db.session.execute(
        sa.select(SubscriptionEvent).where(SubscriptionEvent.subscription_id == sub.id)
        .order_by(SubscriptionEvent.id.desc()).limit(1)
    ).scalar_one_or_none()


def _boom(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


# ---------------------------------------------------------------------------
# create / write path
# ---------------------------------------------------------------------------
def test_create_subscription_writes_row_and_created_event(reconciler, fake):
    result = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a", quantity=2,
                                            metadata={"org": "42"})
    assert result.success
    assert result.ledger_synced
    sub_id = result.data["subscription_id"]
    assert result.data["subscription"]["plan_id"] == "price_a"

    sub = _row(sub_id)
    assert sub.status == "active"
    assert sub.customer.external_id == "cus_1"
    assert sub.metadata_json == {"org": "42"}
    assert sub.items[0].quantity == 2

    event = _latest_event(sub)
    assert event.type == "created"
    assert event.status_from is None
    assert event.status_to == "active"


def test_create_requires_provider_fields(reconciler, fake):
    result = reconciler.create_subscription("fake", customer_id="cus_1")
    assert not result.success
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "price_id"
    assert result.data["customer_id"] == "cus_1"
    assert fake.calls["create_subscription"] == 0


def test_create_rejects_bad_quantity(reconciler, fake):
    result = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a", quantity=0)
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "quantity"


def test_provider_failure_on_write_leaves_no_local_state(reconciler, fake):
    fake.fail.add("create_subscription")
    result = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a")

    assert not result.success
    assert result.error_kind is ErrorKind.PROVIDER
    assert result.data["customer_id"] == "cus_1"
    assert result.data["provider"] == "fake"
    assert db.session.query(Subscription).count() == 0
    assert db.session.query(Customer).count() == 0
    assert db.session.query(SubscriptionEvent).count() == 0


@pytest.mark.parametrize("operation,call", [
    ("update_subscription", lambda rec, sub_id: rec.update_subscription("fake", sub_id, quantity=2)),
    ("pause_subscription", lambda rec, sub_id: rec.pause_subscription("fake", sub_id)),
    ("resume_subscription", lambda rec, sub_id: rec.resume_subscription("fake", sub_id)),
    ("cancel_subscription", lambda rec, sub_id: rec.cancel_subscription("fake", sub_id, cancel_immediately=True)),
])
def test_provider_failure_echoes_identifiers(reconciler, fake, operation, call):
    sub_id = _create(reconciler)
    fake.fail.add(operation)

    result = call(reconciler, sub_id)
    assert not result.success
    assert result.error_kind is ErrorKind.PROVIDER
    assert result.data["subscription_id"] == sub_id
    assert result.data["provider"] == "fake"
    assert _row(sub_id).status == "active"


def test_ledger_failure_after_provider_write_is_not_fatal(reconciler, fake, monkeypatch):
    monkeypatch.setattr(reconciler.ledger, "upsert_subscription", _boom)
    result = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a")

    assert result.success
    assert result.ledger_synced is False
    assert ErrorKind.LEDGER_WRITE in result.tags
    # Provider truth still returned
    assert result.data["subscription"]["status"] == "active"
    assert fake.calls["create_subscription"] == 1
    assert db.session.query(Subscription).count() == 0
    assert db.session.query(Customer).count() == 0


def test_unknown_provider_is_validation_error(reconciler):
    result = reconciler.get_subscription("nope", "sub_1")
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "provider"


# ---------------------------------------------------------------------------
# read path
# ---------------------------------------------------------------------------
def test_trusted_ledger_row_served_without_provider_call(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.get_subscription("fake", sub_id)
    assert result.success
    assert result.data["source"] == "ledger"
    assert fake.calls["get_subscription"] == 0


def test_read_after_provider_outage_serves_stale_ledger(reconciler, registry):
    volatile = registry.register(FakeProvider("volatile", cache_goes_stale=True))
    sub_id = _create(reconciler, provider="volatile")
    volatile.fail.add("*")

    result = reconciler.get_subscription("volatile", sub_id)
    assert result.success
    assert result.stale is True
    assert ErrorKind.CONFLICT_OR_STALE in result.tags
    assert result.data["status"] == "active"
    assert result.data["source"] == "ledger"
    assert result.data["subscription_id"] == sub_id


def test_read_with_no_data_anywhere_is_not_found(reconciler, fake):
    fake.fail.add("*")
    result = reconciler.get_subscription("fake", "sub_missing")
    assert not result.success
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert "subscription" not in result.data
    assert result.data["subscription_id"] == "sub_missing"

    result = reconciler.get_subscription("fake", "sub_missing", best_effort=True)
    assert result.error_kind is ErrorKind.NOT_FOUND


def test_forced_read_syncs_provider_state(reconciler, fake):
    sub_id = _create(reconciler)
    fake.subscriptions[sub_id].status = "past_due"

    result = reconciler.get_subscription("fake", sub_id, force_refresh=True)
    assert result.data["source"] == "provider"
    assert result.data["status"] == "past_due"

    sub = _row(sub_id)
    assert sub.status == "past_due"
    event = _latest_event(sub)
    assert (event.type, event.status_from, event.status_to) == ("updated", "active", "past_due")


def test_read_of_unknown_local_row_backfills_ledger(reconciler, fake):
    fake.seed("sub_remote", customer_id="cus_remote")
    result = reconciler.get_subscription("fake", "sub_remote")
    assert result.success
    sub = _row("sub_remote")
    assert sub is not None
    # Customer created lazily as a placeholder
    assert sub.customer.email == "unknown@example.com"
    assert _latest_event(sub).type == "created"


def test_max_age_forces_provider_read(ctx, reconciler, fake):
    sub_id = _create(reconciler)
    aged = ReconciliationService(reconciler.ledger, reconciler.events, reconciler.providers, max_age_seconds=60)
    db.session.execute(
        sa.update(Subscription).where(Subscription.external_id == sub_id)
        .values(updated_at=datetime.now(timezone.utc) - timedelta(hours=1))
    )
    db.session.commit()

    result = aged.get_subscription("fake", sub_id)
    assert result.data["source"] == "provider"
    assert fake.calls["get_subscription"] == 1


# ---------------------------------------------------------------------------
# lifecycle operations
# ---------------------------------------------------------------------------
def test_update_subscription_quantity_and_metadata(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.update_subscription("fake", sub_id, quantity=5, metadata={"seats": "5"})
    assert result.success

    sub = _row(sub_id)
    assert sub.items[0].quantity == 5
    assert sub.metadata_json == {"seats": "5"}
    event = _latest_event(sub)
    assert event.type == "updated"
    assert event.data["changes"] == {"quantity": 5, "metadata": {"seats": "5"}}


def test_update_with_nothing_to_change_is_rejected(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.update_subscription("fake", sub_id)
    assert result.error_kind is ErrorKind.VALIDATION
    assert fake.calls["update_subscription"] == 0


def test_pause_and_resume(reconciler, fake):
    sub_id = _create(reconciler)
    resume_at = datetime.now(timezone.utc) + timedelta(days=7)

    paused = reconciler.pause_subscription("fake", sub_id, resume_at=resume_at, reason="vacation")
    assert paused.success
    sub = _row(sub_id)
    assert sub.status == "paused"
    assert sub.pause_collection["reason"] == "vacation"
    assert sub.pause_collection["resumes_at"].startswith(resume_at.date().isoformat())
    assert (_latest_event(sub).type, _latest_event(sub).status_from) == ("paused", "active")

    resumed = reconciler.resume_subscription("fake", sub_id)
    assert resumed.success
    sub = _row(sub_id)
    assert sub.status == "active"
    assert sub.pause_collection is None
    assert _latest_event(sub).type == "resumed"


def test_pause_rejects_past_resume_time(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.pause_subscription("fake", sub_id, resume_at=datetime.now(timezone.utc) - timedelta(days=1))
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "resume_at"
    assert fake.calls["pause_subscription"] == 0


def test_pause_accepts_resume_time_as_string(reconciler, fake):
    sub_id = _create(reconciler)
    resume_at = datetime.now(timezone.utc) + timedelta(days=7)

    result = reconciler.pause_subscription("fake", sub_id, resume_at=resume_at.isoformat())
    assert result.success
    assert _row(sub_id).pause_collection["resumes_at"].startswith(resume_at.date().isoformat())


@pytest.mark.parametrize("resume_at", ["next tuesday", ["2030-01-01"]])
def test_pause_rejects_unparsable_resume_time(reconciler, fake, resume_at):
    sub_id = _create(reconciler)
    result = reconciler.pause_subscription("fake", sub_id, resume_at=resume_at)
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "resume_at"
    assert fake.calls["pause_subscription"] == 0


def test_pause_on_provider_without_pause_is_unsupported(reconciler, limited):
    sub_id = _create(reconciler, provider="limited", customer_id=None, price_id=None, plan_id="P-A")
    result = reconciler.pause_subscription("limited", sub_id)
    assert not result.success
    assert result.error_kind is ErrorKind.CAPABILITY_UNSUPPORTED
    assert _row(sub_id, "limited").status == "active"


def test_cancel_immediately(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.cancel_subscription("fake", sub_id, cancel_immediately=True, reason="too expensive")
    assert result.success
    sub = _row(sub_id)
    assert sub.status == "canceled"
    assert sub.cancellation_reason == "too expensive"
    event = _latest_event(sub)
    assert (event.type, event.status_from, event.status_to) == ("cancelled", "active", "canceled")


def test_cancel_at_period_end_keeps_status_until_provider_says_otherwise(reconciler, fake):
    sub_id = _create(reconciler)
    result = reconciler.cancel_subscription("fake", sub_id, cancel_immediately=False)
    assert result.success
    sub = _row(sub_id)
    assert sub.cancel_at_period_end is True
    assert sub.status == "active"

    # Period ends on the provider side
    fake.subscriptions[sub_id].status = "canceled"
    reconciler.get_subscription("fake", sub_id, force_refresh=True)
    sub = _row(sub_id)
    assert sub.status == "canceled"
    assert _latest_event(sub).status_to == "canceled"


def test_cancel_at_period_end_unsupported_on_limited_provider(reconciler, limited):
    sub_id = _create(reconciler, provider="limited", customer_id=None, price_id=None, plan_id="P-A")
    result = reconciler.cancel_subscription("limited", sub_id, cancel_immediately=False)
    assert result.error_kind is ErrorKind.CAPABILITY_UNSUPPORTED
    assert _row(sub_id, "limited").cancel_at_period_end is False


def test_local_write_does_not_outrank_provider_event_in_same_second(reconciler, fake):
    sub_id = _create(reconciler)
    assert _row(sub_id).synced_at is None

    # Provider timestamps have whole-second resolution
    occurred_at = datetime.now(timezone.utc).replace(microsecond=0)
    result = reconciler.apply_provider_state("fake", SubscriptionSnapshot(external_id=sub_id, status="past_due"),
                                             occurred_at=occurred_at)
    assert result.success
    assert "skipped" not in result.data
    sub = _row(sub_id)
    assert sub.status == "past_due"
    assert _latest_event(sub).status_to == "past_due"


def test_latest_event_matches_stored_status_after_every_write(reconciler, fake):
    sub_id = _create(reconciler)
    steps = [
        lambda: reconciler.update_subscription("fake", sub_id, quantity=3),
        lambda: reconciler.pause_subscription("fake", sub_id, reason="x"),
        lambda: reconciler.resume_subscription("fake", sub_id),
        lambda: reconciler.cancel_subscription("fake", sub_id, cancel_immediately=False),
        lambda: reconciler.cancel_subscription("fake", sub_id, cancel_immediately=True),
    ]
    for step in [lambda: None] + steps:
        step()
        sub = _row(sub_id)
        assert _latest_event(sub).status_to == sub.status


# ---------------------------------------------------------------------------
# usage
# ---------------------------------------------------------------------------
def test_report_usage_records_locally(reconciler, fake):
    created = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_metered")
    item_id = created.data["subscription"]["items"][0]["id"]

    result = reconciler.report_usage("fake", item_id, 7, action="increment")
    assert result.success
    assert result.ledger_synced
    assert result.data["subscription_id"] == created.data["subscription_id"]
    assert fake.usage[0].customer_id == "cus_1"

    record = db.session.query(UsageRecord).one()
    assert (record.quantity, record.action) == (7, "increment")


def test_report_usage_for_item_missing_locally(reconciler, fake):
    result = reconciler.report_usage("fake", "si_unknown", 1)
    assert result.success
    assert result.ledger_synced is False
    assert db.session.query(UsageRecord).count() == 0


def test_report_usage_validation(reconciler, fake):
    assert reconciler.report_usage("fake", "si_1", -2).error.field == "quantity"
    assert reconciler.report_usage("fake", "si_1", 2, action="bogus").error.field == "action"
    assert reconciler.report_usage("fake", None, 2).error.field == "subscription_item_id"
    assert fake.calls["report_usage"] == 0


def test_report_usage_unsupported(reconciler, limited):
    result = reconciler.report_usage("limited", "si_1", 1)
    assert result.error_kind is ErrorKind.CAPABILITY_UNSUPPORTED


# ---------------------------------------------------------------------------
# customers
# ---------------------------------------------------------------------------
def test_customer_lifecycle(reconciler, fake):
    created = reconciler.create_customer("fake", "ana@example.com", name="Ana")
    assert created.success
    cus_id = created.data["customer_id"]
    assert created.data["customer"]["email"] == "ana@example.com"

    updated = reconciler.update_customer("fake", cus_id, name="Ana Maria")
    assert updated.data["customer"]["name"] == "Ana Maria"

    pm = reconciler.attach_payment_method("fake", cus_id, "pm_1", set_default=True)
    assert pm.success
    row = db.session.query(Customer).filter_by(external_id=cus_id).one()
    assert row.default_payment_method == "pm_1"

    deleted = reconciler.delete_customer("fake", cus_id)
    assert deleted.data["ledger_deleted"] is True
    assert db.session.query(Customer).count() == 0


def test_create_customer_requires_valid_email(reconciler, fake):
    result = reconciler.create_customer("fake", "not-an-email")
    assert result.error_kind is ErrorKind.VALIDATION
    assert fake.calls["create_customer"] == 0


def test_get_customer_backfills_placeholder(reconciler, fake):
    sub_id = _create(reconciler, customer_id="cus_late")
    fake.customers["cus_late"] = CustomerSnapshot(external_id="cus_late", email="late@example.com", name="Late")

    result = reconciler.get_customer("fake", "cus_late")
    assert result.success
    assert result.data["source"] == "provider"
    assert _row(sub_id).customer.email == "late@example.com"


def test_delete_customer_best_effort_removes_local_row(reconciler, fake):
    _create(reconciler, customer_id="cus_gone")
    fake.fail.add("delete_customer")

    strict = reconciler.delete_customer("fake", "cus_gone")
    assert strict.error_kind is ErrorKind.PROVIDER
    assert db.session.query(Customer).filter_by(external_id="cus_gone").count() == 1

    lenient = reconciler.delete_customer("fake", "cus_gone", best_effort=True)
    assert lenient.success
    assert lenient.data["provider_deleted"] is False
    assert db.session.query(Customer).filter_by(external_id="cus_gone").count() == 0


def test_customers_unsupported_on_limited_provider(reconciler, limited):
    result = reconciler.create_customer("limited", "a@example.com")
    assert result.error_kind is ErrorKind.CAPABILITY_UNSUPPORTED


def test_list_customer_subscriptions(reconciler, fake, limited):
    _create(reconciler, customer_id="cus_list")
    _create(reconciler, customer_id="cus_list", price_id="price_b")
    result = reconciler.list_customer_subscriptions("fake", "cus_list")
    assert result.data["source"] == "provider"
    assert len(result.data["subscriptions"]) == 2

    _create(reconciler, provider="limited", customer_id="cus_pp", price_id=None, plan_id="P-A")
    result = reconciler.list_customer_subscriptions("limited", "cus_pp")
    assert result.data["source"] == "ledger"
    assert len(result.data["subscriptions"]) == 1


# ---------------------------------------------------------------------------
# payments
# ---------------------------------------------------------------------------
def test_payment_and_refund(reconciler, fake):
    paid = reconciler.create_payment("fake", amount=1999, currency="usd", description="one-off")
    assert paid.success
    assert paid.data["client_secret"].endswith("_secret")
    payment = db.session.query(Payment).one()
    assert (payment.amount, payment.currency) == (1999, "USD")

    refund = reconciler.refund_payment("fake", paid.data["transaction_id"], amount=500, reason="duplicate")
    assert refund.success
    assert fake.requests["refund"].currency == "USD"
    row = db.session.query(Refund).one()
    assert row.payment_id == payment.id
    assert row.amount == 500


@pytest.mark.parametrize("amount,currency,field", [
    (0, "USD", "amount"),
    ("12.5", "USD", "amount"),
    (100, "dollars", "currency"),
])
def test_payment_validation(reconciler, fake, amount, currency, field):
    result = reconciler.create_payment("fake", amount=amount, currency=currency)
    assert result.error.field == field
    assert fake.calls["create_payment"] == 0
