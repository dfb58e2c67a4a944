# unlocks/conftest.py
import pytest


@pytest.fixture(scope="function", autouse=True)
def db_engine(tmp_path, monkeypatch):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not in-memory) so threaded tests get one connection per thread
    against the same database.
    """
    from unlocks.core.database import init_engine, create_all_tables, drop_all_tables, dispose_engine
    from unlocks.core.metrics import METRICS

    for var in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "ADMIN_API_KEY", "TEST_DATABASE_URL", "ENV", "AUTH_JWT_SECRET"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("USE_SIMULATED_PURCHASES", "false")

    engine = init_engine(f"sqlite:///{tmp_path / 'unlocks.db'}")
    create_all_tables()
    METRICS.reset()
    yield engine
    drop_all_tables()
    dispose_engine()


@pytest.fixture
def stripe_env(monkeypatch):
    """Stripe configured with test keys. Webhook verification is local; no network."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_unlocks")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_unlocks")
    return {"secret_key": "sk_test_unlocks", "webhook_secret": "whsec_test_unlocks"}
