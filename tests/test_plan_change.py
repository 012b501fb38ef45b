from datetime import datetime, timedelta, timezone

import pytest

from subledger.extensions import db
from subledger.models import ScheduledPlanChange, Subscription, SubscriptionEvent
from subledger.providers.base import SubscriptionSnapshot
from subledger.services.errors import ErrorKind


@pytest.fixture()
def changer(ctx):
    from subledger.services import get_plan_changer
    return get_plan_changer()


def _sub(external_id, provider="fake"):
    return (
        db.session.query(Subscription)
        .filter_by(external_id=external_id, provider=provider)
        .populate_existing()
        .one()
    )


def _event_types(sub):
    return [e.type for e in db.session.query(SubscriptionEvent).filter_by(subscription_id=sub.id)
            .order_by(SubscriptionEvent.id)]


def _later(days=7):
    return datetime.now(timezone.utc) + timedelta(days=days)


def test_immediate_change_updates_plan_in_place(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]

    result = changer.change_plan("fake", sub_id, to_plan="price_b", from_plan="price_a")
    assert result.success
    assert result.data["state"] == "changed"
    assert fake.requests["update_subscription"].price_id == "price_b"

    sub = _sub(sub_id)
    assert sub.plan_id == "price_b"
    assert sub.pending_update is None
    assert _event_types(sub).count("plan_changed") == 1


def test_immediate_change_provider_failure_changes_nothing(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]
    fake.fail.add("update_subscription")

    result = changer.change_plan("fake", sub_id, to_plan="price_b")
    assert result.error_kind is ErrorKind.PROVIDER
    sub = _sub(sub_id)
    assert sub.plan_id == "price_a"
    assert "plan_changed" not in _event_types(sub)


def test_scheduled_change_through_provider_schedule(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a",
                                            quantity=3).data["subscription_id"]
    start = _later()

    result = changer.change_plan("fake", sub_id, to_plan="price_b", apply_immediately=False, start_date=start)
    assert result.success
    assert result.data["state"] == "scheduled"
    assert result.data["schedule_id"].startswith("sub_sched_")

    phases = fake.schedules[0].phases
    assert [p.price_id for p in phases] == ["price_a", "price_b"]
    assert phases[1].quantity == 3

    sub = _sub(sub_id)
    # Plan only changes when the schedule fires
    assert sub.plan_id == "price_a"
    assert sub.pending_update["to_plan"] == "price_b"
    assert sub.pending_update["scheduled_at"] == start.isoformat()
    assert _event_types(sub)[-1] == "plan_change_scheduled"


def test_schedule_firing_clears_pending_update(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]
    start = _later()
    changer.change_plan("fake", sub_id, to_plan="price_b", apply_immediately=False, start_date=start)

    result = reconciler.apply_provider_state(
        "fake", SubscriptionSnapshot(external_id=sub_id, status="active", plan_id="price_b"),
        occurred_at=start + timedelta(seconds=1),
    )
    assert result.success
    sub = _sub(sub_id)
    assert sub.plan_id == "price_b"
    assert sub.pending_update is None
    assert _event_types(sub)[-1] == "plan_changed"


def test_provider_read_after_schedule_fires_clears_pending_update(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]
    changer.change_plan("fake", sub_id, to_plan="price_b", apply_immediately=False, start_date=_later())

    fake.subscriptions[sub_id].plan_id = "price_b"
    assert reconciler.get_subscription("fake", sub_id, force_refresh=True).success

    sub = _sub(sub_id)
    assert sub.pending_update is None
    assert _event_types(sub).count("plan_changed") == 1

    # Nothing left to settle on the next read
    reconciler.get_subscription("fake", sub_id, force_refresh=True)
    assert _event_types(_sub(sub_id)).count("plan_changed") == 1


def test_unrelated_update_keeps_pending_update(reconciler, changer, fake):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]
    changer.change_plan("fake", sub_id, to_plan="price_b", apply_immediately=False, start_date=_later())

    reconciler.apply_provider_state("fake", SubscriptionSnapshot(external_id=sub_id, status="past_due"),
                                    occurred_at=datetime.now(timezone.utc))
    sub = _sub(sub_id)
    assert sub.status == "past_due"
    assert sub.pending_update["to_plan"] == "price_b"


@pytest.mark.parametrize("start_date", [None, datetime(2020, 1, 1, tzinfo=timezone.utc)])
def test_scheduled_change_requires_future_start(reconciler, changer, fake, start_date):
    sub_id = reconciler.create_subscription("fake", customer_id="cus_1", price_id="price_a").data["subscription_id"]
    result = changer.change_plan("fake", sub_id, to_plan="price_b", apply_immediately=False, start_date=start_date)
    assert result.error_kind is ErrorKind.VALIDATION
    assert result.error.field == "start_date"
    assert fake.calls["create_schedule"] == 0


def test_change_rejects_same_plan_and_bad_proration(changer, fake):
    same = changer.change_plan("fake", "sub_x", to_plan="price_a", from_plan="price_a")
    assert same.error.field == "to_plan"
    bad = changer.change_plan("fake", "sub_x", to_plan="price_b", proration_behavior="sometimes")
    assert bad.error.field == "proration_behavior"
    assert fake.calls["update_subscription"] == 0


def test_provider_without_in_place_change_replaces_subscription(reconciler, changer, limited):
    old_id = reconciler.create_subscription("limited", plan_id="P-A", quantity=2,
                                            metadata={"org": "7"}).data["subscription_id"]

    result = changer.change_plan("limited", old_id, to_plan="P-B")
    assert result.success
    assert result.data["state"] == "replaced"
    assert result.data["previous_subscription_id"] == old_id
    new_id = result.data["subscription_id"]
    assert new_id != old_id

    old = _sub(old_id, "limited")
    assert old.status == "canceled"
    assert old.cancellation_reason == "plan change"

    new = _sub(new_id, "limited")
    assert new.plan_id == "P-B"
    assert new.items[0].quantity == 2
    assert new.metadata_json == {"org": "7", "replaces_subscription": old_id}
    assert _event_types(new) == ["plan_changed"]


def test_replacement_failure_reports_cancelled_without_replacement(reconciler, changer, limited):
    old_id = reconciler.create_subscription("limited", plan_id="P-A").data["subscription_id"]
    limited.fail.add("create_subscription")

    result = changer.change_plan("limited", old_id, to_plan="P-B")
    assert not result.success
    assert result.error_kind is ErrorKind.PROVIDER
    assert result.data["state"] == "cancelled_without_replacement"
    assert _sub(old_id, "limited").status == "canceled"
    assert db.session.query(Subscription).filter_by(provider="limited").count() == 1


def test_provider_without_schedules_records_change_locally(reconciler, changer, limited):
    sub_id = reconciler.create_subscription("limited", plan_id="P-A").data["subscription_id"]
    start = _later(14)

    result = changer.change_plan("limited", sub_id, to_plan="P-B", apply_immediately=False, start_date=start)
    assert result.success
    assert result.data["state"] == "scheduled"
    assert result.data["provider_call"] is False
    assert limited.calls["create_schedule"] == 0
    assert limited.calls["update_subscription"] == 0

    change = db.session.query(ScheduledPlanChange).one()
    assert (change.from_plan_id, change.to_plan_id, change.status) == ("P-A", "P-B", "pending")
    sub = _sub(sub_id, "limited")
    assert sub.plan_id == "P-A"
    assert sub.pending_update["scheduled_change_id"] == change.id


def test_locally_scheduled_change_completes_when_provider_reports_new_plan(reconciler, changer, limited):
    sub_id = reconciler.create_subscription("limited", plan_id="P-A").data["subscription_id"]
    changer.change_plan("limited", sub_id, to_plan="P-B", apply_immediately=False, start_date=_later(14))
    target = _sub(sub_id, "limited").pending_update["to_price_id"]

    result = reconciler.apply_provider_state(
        "limited", SubscriptionSnapshot(external_id=sub_id, status="active", plan_id=target),
        occurred_at=datetime.now(timezone.utc),
    )
    assert result.success

    change = db.session.query(ScheduledPlanChange).populate_existing().one()
    assert change.status == "completed"
    assert change.executed_at is not None
    sub = _sub(sub_id, "limited")
    assert sub.pending_update is None
    assert _event_types(sub)[-1] == "plan_changed"


def test_change_for_unknown_subscription_is_not_found(changer, limited):
    limited.fail.add("get_subscription")
    result = changer.change_plan("limited", "I-MISSING", to_plan="P-B")
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert limited.calls["cancel_subscription"] == 0
