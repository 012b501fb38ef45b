import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import pytest
from subledger import create_app
from subledger.extensions import db
from subledger.providers import init_providers
from subledger.providers.base import Capability

from tests.fakes import FakeProvider

# A PayPal-shaped double: no customers, usage, schedules or in-place plan change
LIMITED_CAPABILITIES = {
    Capability.CREATE_SUBSCRIPTION,
    Capability.GET_SUBSCRIPTION,
    Capability.UPDATE_SUBSCRIPTION,
    Capability.CANCEL_SUBSCRIPTION,
    Capability.CREATE_PAYMENT,
    Capability.REFUND,
}


@pytest.fixture(scope="session")
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "DEFAULT_PROVIDER": "fake",
        "APP_BASE_URL": "http://example.test",
        "RATELIMIT_ENABLED": False,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture(autouse=True)
def registry(app):
    """Fresh provider registry per test: real adapters plus the fakes."""
    reg = init_providers(app)
    reg.default = "fake"
    reg.register(FakeProvider("fake"))
    reg.register(FakeProvider("limited", capabilities=LIMITED_CAPABILITIES,
                              required_fields={"create_subscription": ("plan_id",)}))
    return reg


@pytest.fixture()
def fake(registry):
    return registry.get("fake")


@pytest.fixture()
def limited(registry):
    return registry.get("limited")


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture()
def reconciler(ctx):
    from subledger.services import get_reconciler
    return get_reconciler()
