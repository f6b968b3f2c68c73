# auditor/conftest.py
import os
import sys
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Deterministic test configuration (must be set before settings are imported)
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CLERK_SECRET_KEY"] = "test-secret-key-for-auditor"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_auditor"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_auditor"
os.environ["STRIPE_PRICE_BASIC"] = "price_basic"
os.environ["STRIPE_PRICE_PRO"] = "price_pro"
os.environ["STRIPE_PRICE_TEAM"] = "price_team"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["PUBLIC_BASE_URL"] = "http://localhost:3000"
os.environ.pop("TEST_DATABASE_URL", None)

from auditor.core.clerk_auth import set_jwks_provider_for_tests  # noqa: E402
from auditor.core.database import init_engine, reset_database  # noqa: E402
from auditor.features.billing.service import set_provider_for_tests  # noqa: E402
from auditor.tests.mocks import FakeProvider  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db():
    """
    Fresh in-memory SQLite database for every test.

    StaticPool keeps a single shared connection so every session sees the
    same database.
    """
    init_engine("sqlite://")
    reset_database()
    yield
    set_provider_for_tests(None)
    set_jwks_provider_for_tests(None)


@pytest.fixture
def fake_provider():
    provider = FakeProvider()
    set_provider_for_tests(provider)
    return provider


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from auditor.main import app

    return TestClient(app)
