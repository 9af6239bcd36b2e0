import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

_TEST_DATA_DIR = tempfile.mkdtemp(prefix="careerdev-tests-")

os.environ["DB_PATH"] = os.path.join(_TEST_DATA_DIR, "careerdev.db")
os.environ["DATABASE_URL"] = ""
os.environ["AUTH_TOKEN_SECRET"] = "test-auth-secret"
os.environ["OPENAI_API_KEY"] = ""
os.environ["BYPASS_PLAN_LIMITS"] = "0"
os.environ["PAYMENT_GATEWAY"] = "auto"
os.environ["PAYU_KEY"] = "testkey"
os.environ["PAYU_SALT"] = "testsalt"
os.environ["PHONEPE_MERCHANT_ID"] = "MERCHANTUAT"
os.environ["PHONEPE_SALT_KEY"] = "phonepe-salt"
os.environ["PHONEPE_SALT_INDEX"] = "1"
os.environ["PUBLIC_BASE_URL"] = "http://api.test"
os.environ["FRONTEND_BASE_URL"] = "http://frontend.test"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from careerdev.auth import create_auth_token  # noqa: E402
from careerdev.storage import InMemoryPaymentOrderStore, InMemorySubscriptionStore  # noqa: E402
from careerdev.subscriptions import SubscriptionLedger  # noqa: E402

PAYU_KEY = "testkey"
PAYU_SALT = "testsalt"
PHONEPE_MERCHANT_ID = "MERCHANTUAT"
PHONEPE_SALT = "phonepe-salt"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, days=0, hours=0):
        self.now = self.now + timedelta(days=days, hours=hours)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def subscription_store():
    return InMemorySubscriptionStore()


@pytest.fixture
def order_store():
    return InMemoryPaymentOrderStore()


@pytest.fixture
def ledger(subscription_store, clock):
    return SubscriptionLedger(subscription_store, clock=clock)


@pytest.fixture
def user_id():
    return f"user-{uuid.uuid4().hex[:12]}"


@pytest.fixture
def client():
    from careerdev.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers(user_id):
    token = create_auth_token(user_id, f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}
