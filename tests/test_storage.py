import pytest

from careerdev.db import Database, adapt_query_for_backend
from careerdev.storage import InMemoryPaymentOrderStore, PaymentOrder, SQLPaymentOrderStore


def make_order(transaction_id="CAREER_1_ab", **overrides):
    values = {
        "transaction_id": transaction_id,
        "gateway": "payu",
        "user_id": "u1",
        "tier": "pro",
        "amount": "69",
        "currency": "INR",
    }
    values.update(overrides)
    return PaymentOrder(**values)


@pytest.fixture(params=["memory", "sqlite"])
def orders(request, tmp_path):
    if request.param == "memory":
        return InMemoryPaymentOrderStore()
    database = Database("sqlite", db_path=str(tmp_path / "orders.db"))
    database.init_schema()
    return SQLPaymentOrderStore(database)


def test_create_and_get(orders):
    orders.create(make_order())
    order = orders.get("CAREER_1_ab")
    assert order.status == "pending"
    assert order.amount == "69"
    assert order.created_at
    assert orders.get("missing") is None


def test_duplicate_transaction_id(orders):
    orders.create(make_order())
    with pytest.raises(ValueError):
        orders.create(make_order())


def test_transition_is_conditional(orders):
    orders.create(make_order())
    assert orders.transition("CAREER_1_ab", ["pending"], "verified", gateway_payment_id="pay_1") is True
    assert orders.transition("CAREER_1_ab", ["pending"], "verified") is False
    assert orders.transition("CAREER_1_ab", ["verified"], "applied") is True

    order = orders.get("CAREER_1_ab")
    assert order.status == "applied"
    assert order.gateway_payment_id == "pay_1"


def test_transition_unknown_order(orders):
    assert orders.transition("missing", ["pending"], "failed", reason="nope") is False


def test_sql_transition_rejects_unknown_fields(tmp_path):
    database = Database("sqlite", db_path=str(tmp_path / "orders.db"))
    database.init_schema()
    store = SQLPaymentOrderStore(database)
    store.create(make_order())
    with pytest.raises(ValueError):
        store.transition("CAREER_1_ab", ["pending"], "failed", amount="1")


def test_query_placeholders_follow_backend():
    assert adapt_query_for_backend("sqlite", "SELECT ? ", [1]) == ("SELECT ? ", [1])
    assert adapt_query_for_backend("postgres", "SELECT ? ", [1]) == ("SELECT %s ", (1,))


def test_analytics_event_is_recorded(tmp_path):
    database = Database("sqlite", db_path=str(tmp_path / "events.db"))
    database.init_schema()
    database.log_analytics_event("payment", "applied", "u1", {"tier": "pro"})
    with database.connect() as connection:
        row = connection.execute("SELECT * FROM analytics_events").fetchone()
    assert row["event_name"] == "applied"
    assert row["meta_json"] == '{"tier":"pro"}'


def test_unsupported_backend():
    with pytest.raises(ValueError):
        Database("mysql")
