"""
Test fixtures for the Practice Exams Platform.

Provides app, client, auth_client, and db fixtures with file-based SQLite.
Question markdown and AI providers are mocked per test; nothing hits the network.
"""

from __future__ import annotations

import pytest
from datetime import datetime

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

EXAM_LINK = "https://raw.githubusercontent.com/Ditectrev/Example-Practice-Tests-Exams-Questions/main/README.md"

SAMPLE_MARKDOWN = """# Example Practice Exam

### Which service stores objects?

- [x] S3
- [ ] EC2
- [ ] Lambda

### Which of these are compute services?

![Compute diagram](https://example.com/compute.png)

- [x] EC2
- [x] Lambda
- [ ] S3

### What does IAM manage?

- [ ] Billing
- [x] Identities and access
"""


@pytest.fixture(autouse=True)
def reset_singletons():
    """Clear process-wide state shared between tests."""
    from ai_resilience import get_circuit_breaker
    from extensions import ServiceManager
    from trial import TrialService

    ServiceManager.reset()
    get_circuit_breaker().reset()
    TrialService._creating.clear()
    yield
    ServiceManager.reset()
    get_circuit_breaker().reset()


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "WTF_CSRF_ENABLED": False,
        "ENCRYPTION_SECRET": "test-encryption-secret",
        "STRIPE_SECRET_KEY": "",
        "STRIPE_WEBHOOK_SECRET": "",
        "STRIPE_PRICE_ADS_FREE": "price_ads_free",
        "STRIPE_PRICE_LOCAL": "price_local",
        "STRIPE_PRICE_BYOK": "price_byok",
        "STRIPE_PRICE_DITECTREV": "price_ditectrev",
        "DITECTREV_AI_KEY": "",
        "REDIS_URL": "",
        "CRON_SECRET": "cron-test-secret",
        "AI_RETRY_DELAY": 0.0,
    })

    with app.app_context():
        from database import init_db, run_migrations, get_db

        init_db()
        run_migrations()

        # Seed test user
        db = get_db()
        db.execute(
            "INSERT INTO users (id, name, email, password_hash, created_at) "
            "VALUES (1, 'Test Student', 'test@example.com', ?, ?)",
            ("pbkdf2:sha256:600000$test$hash", datetime.now().isoformat()),
        )
        db.commit()

        yield app


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


@pytest.fixture
def auth_client(app):
    """Authenticated test client (logged in as test user)."""
    from werkzeug.security import generate_password_hash
    from database import get_db

    with app.app_context():
        db = get_db()
        db.execute(
            "UPDATE users SET password_hash = ? WHERE id = 1",
            (generate_password_hash("Testpass123"),),
        )
        db.commit()

    client = app.test_client()
    with client:
        client.post("/api/auth/login", json={
            "email": "test@example.com",
            "password": "Testpass123",
        })
        yield client


@pytest.fixture
def db(app):
    """Direct database access for store tests."""
    with app.app_context():
        from database import get_db
        yield get_db()


@pytest.fixture
def set_subscription(app):
    """Give user 1 an active subscription of the given type."""
    def _set(sub_type: str, stripe_subscription_id: str = "sub_test"):
        with app.app_context():
            from subscription_store import upsert_stripe_subscription
            upsert_stripe_subscription(stripe_subscription_id, {
                "user_id": 1,
                "subscription_type": sub_type,
                "subscription_status": "active",
            })
    return _set


@pytest.fixture
def mock_markdown(monkeypatch):
    """Serve SAMPLE_MARKDOWN for every question fetch; returns the mocked requests.get."""
    from unittest.mock import MagicMock

    response = MagicMock(ok=True, status_code=200, reason="OK", text=SAMPLE_MARKDOWN)
    response.headers = {"content-type": "text/plain; charset=utf-8"}
    get = MagicMock(return_value=response)
    monkeypatch.setattr("questions.requests.get", get)
    return get
