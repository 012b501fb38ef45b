import pytest
from sqlalchemy.exc import OperationalError

from subledger.extensions import db
from subledger.models import Payment
from subledger.services import get_catalog
from subledger.services.ledger import LedgerStore


@pytest.fixture()
def plans(app):
    with app.app_context():
        catalog = get_catalog()
        catalog.add_plan(plan_id="basic", name="Basic", price="10.00", stripe_price_id="price_basic",
                         features=[{"name": "projects", "feature_limit": 3}])
        catalog.add_plan(plan_id="pro", name="Pro", price="25.00", stripe_price_id="price_pro", order=1,
                         features=[{"name": "projects", "feature_limit": 10}, {"name": "api"}])
        db.session.commit()


def _create(client, **body):
    payload = {"customer_id": "cus_1", "price_id": "price_a"}
    payload.update(body)
    resp = client.post("/api/subscriptions", json=payload)
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["data"]["subscription_id"]


def test_healthz_lists_providers(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert {"fake", "limited", "stripe", "paypal"} <= set(body["providers"])


def test_unknown_route_is_json_404(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False


def test_create_subscription_envelope(client, fake):
    resp = client.post("/api/subscriptions", json={"customer_id": "cus_1", "price_id": "price_a", "quantity": 2},
                       headers={"Idempotency-Key": "order-77"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["message"] == "Subscription created"
    assert body["data"]["subscription"]["status"] == "active"
    assert "error" not in body
    assert fake.requests["create_subscription"].idempotency_key == "order-77"


def test_validation_failure_is_400_and_keeps_identifiers(client):
    resp = client.post("/api/subscriptions", json={"customer_id": "cus_1"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"] == {"kind": "ValidationError", "field": "price_id", "code": None}
    assert body["data"]["customer_id"] == "cus_1"


def test_non_object_body_is_rejected(client):
    resp = client.post("/api/subscriptions", json=["not", "an", "object"])
    assert resp.status_code == 400
    assert resp.get_json()["error"]["field"] == "body"


@pytest.mark.parametrize("provider", [1, ["fake"], {"name": "fake"}])
def test_non_string_provider_is_a_validation_error(client, provider):
    resp = client.post("/api/subscriptions", json={"provider": provider, "customer_id": "cus_1", "price_id": "price_a"})
    assert resp.status_code == 400
    assert resp.get_json()["error"]["field"] == "provider"


def test_provider_name_is_trimmed_and_lowercased(client, fake):
    resp = client.post("/api/subscriptions", json={"provider": "  FAKE ", "customer_id": "cus_1", "price_id": "price_a"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["provider"] == "fake"


def test_provider_failure_is_a_handled_outcome(client, fake):
    fake.fail.add("create_subscription")
    resp = client.post("/api/subscriptions", json={"customer_id": "cus_1", "price_id": "price_a"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is False
    assert body["error"]["kind"] == "ProviderError"
    assert body["error"]["code"] == "outage"


def test_unsupported_capability(client):
    sub_id = _create(client, provider="limited", plan_id="P-A", customer_id=None, price_id=None)
    resp = client.post(f"/api/subscriptions/{sub_id}/pause", json={"provider": "limited"})
    assert resp.status_code == 200
    assert resp.get_json()["error"]["kind"] == "CapabilityUnsupported"


def test_missing_subscription_is_404(client, fake):
    fake.fail.add("get_subscription")
    resp = client.get("/api/subscriptions/sub_missing?refresh=1")
    assert resp.status_code == 404
    assert resp.get_json()["data"]["subscription_id"] == "sub_missing"


def test_stale_read_is_flagged(client, registry):
    from tests.fakes import FakeProvider

    volatile = registry.register(FakeProvider("volatile", cache_goes_stale=True))
    sub_id = _create(client, provider="volatile")
    volatile.fail.add("*")

    resp = client.get(f"/api/subscriptions/{sub_id}?provider=volatile")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["stale"] is True
    assert body["tags"] == ["ConflictOrStale"]
    assert body["data"]["status"] == "active"


def test_ledger_failure_surfaces_as_unsynced(client, monkeypatch):
    def boom(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(LedgerStore, "upsert_subscription", boom)
    resp = client.post("/api/subscriptions", json={"customer_id": "cus_1", "price_id": "price_a"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["ledger_synced"] is False
    assert "LedgerWriteError" in body["tags"]


def test_pause_with_unparsable_resume_time(client):
    sub_id = _create(client)
    resp = client.post(f"/api/subscriptions/{sub_id}/pause", json={"resume_at": "next tuesday"})
    assert resp.status_code == 400
    assert resp.get_json()["error"]["field"] == "resume_at"


def test_lifecycle_and_event_history(client):
    sub_id = _create(client)
    assert client.put(f"/api/subscriptions/{sub_id}", json={"quantity": 4}).status_code == 200
    assert client.post(f"/api/subscriptions/{sub_id}/pause", json={"reason": "trip"}).status_code == 200
    assert client.post(f"/api/subscriptions/{sub_id}/resume", json={}).status_code == 200
    cancel = client.post(f"/api/subscriptions/{sub_id}/cancel", json={"cancel_immediately": False})
    assert cancel.get_json()["data"]["subscription"]["cancel_at_period_end"] is True

    events = client.get(f"/api/subscriptions/{sub_id}/events").get_json()["data"]["events"]
    assert [e["type"] for e in events] == ["cancelled", "resumed", "paused", "updated", "created"]
    limited = client.get(f"/api/subscriptions/{sub_id}/events?limit=2").get_json()["data"]["events"]
    assert len(limited) == 2


def test_usage_route(client):
    sub = client.post("/api/subscriptions", json={"customer_id": "cus_1", "price_id": "price_m"}).get_json()
    item_id = sub["data"]["subscription"]["items"][0]["id"]
    resp = client.post("/api/subscriptions/usage", json={"subscription_item_id": item_id, "quantity": 12})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["quantity"] == 12


def test_customer_routes(client):
    created = client.post("/api/customers", json={"email": "lee@example.com", "name": "Lee"}).get_json()
    cus_id = created["data"]["customer_id"]

    fetched = client.get(f"/api/customers/{cus_id}").get_json()
    assert fetched["data"]["customer"]["email"] == "lee@example.com"

    resp = client.post(f"/api/customers/{cus_id}/payment-methods",
                       json={"payment_method_id": "pm_9", "set_default": True})
    assert resp.status_code == 200

    assert client.get(f"/api/customers/{cus_id}/subscriptions").get_json()["data"]["subscriptions"] == []
    assert client.delete(f"/api/customers/{cus_id}").get_json()["data"]["ledger_deleted"] is True


def test_payment_routes_convert_major_units(client, app):
    resp = client.post("/api/payments", json={"amount": "12.50", "currency": "usd"})
    assert resp.status_code == 200
    txn = resp.get_json()["data"]["transaction_id"]
    with app.app_context():
        assert db.session.query(Payment).filter_by(transaction_id=txn).one().amount == 1250

    bad = client.post("/api/payments", json={"amount": "twelve", "currency": "usd"})
    assert bad.status_code == 400
    assert bad.get_json()["error"]["field"] == "amount"

    refund = client.post("/api/payments/refund", json={"transaction_id": txn, "amount_minor": 250})
    assert refund.status_code == 200
    assert refund.get_json()["data"]["refund_id"].startswith("re_")


def test_plan_catalog_routes(client, plans):
    listed = client.get("/api/plans").get_json()["data"]["plans"]
    assert [p["id"] for p in listed] == ["basic", "pro"]

    assert client.get("/api/plans/pro").get_json()["data"]["plan"]["stripe_price_id"] == "price_pro"
    assert client.get("/api/plans/enterprise").status_code == 404

    compared = client.get("/api/plans/compare?from_plan_id=basic&to_plan_id=pro").get_json()["data"]
    assert compared["price_difference"] == 15.0
    assert compared["is_upgrade"] is True
    features = {f["name"]: f for f in compared["feature_comparison"]}
    assert features["projects"]["improved"] is True
    assert features["api"]["from_included"] is False

    missing = client.get("/api/plans/compare?from_plan_id=basic")
    assert missing.status_code == 400


def test_plan_change_route(client):
    sub_id = _create(client)
    resp = client.post("/api/plans/change", json={"subscription_id": sub_id, "to_plan_id": "price_b"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["state"] == "changed"

    bad = client.post("/api/plans/change", json={"subscription_id": sub_id, "to_plan_id": "price_c",
                                                 "apply_immediately": False, "start_date": "soon"})
    assert bad.status_code == 400
    assert bad.get_json()["error"]["field"] == "start_date"
