import json
from datetime import datetime, timezone

import pytest

from callsync import create_app
from callsync.config import Config
from callsync.models import db, User, IntegrationAccount
from callsync.sync_status import ensure_sync_status

NOW = datetime(2026, 10, 6, 12, 0, tzinfo=timezone.utc)

DEFAULT_CREDENTIALS = {
    "twilio": {"account_sid": "AC123", "auth_token": "secret"},
    "telnyx": {"api_key": "KEY123"},
    "vapi": {"api_key": "vapi-key"},
    "retell": {"api_key": "retell-key"},
}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False}}
    BACKOFF_JITTER_RATIO = 0.0
    FOLLOWUPS_ENABLED = False
    AI_CLASSIFICATION_ENABLED = False
    ALERT_WEBHOOK_URL = None
    CREDENTIAL_DECRYPTOR = None
    CREDENTIAL_ENCRYPTOR = None


@pytest.fixture()
def app(tmp_path):
    class _Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'callsync.db'}"

    app = create_app(_Config)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def user(app):
    user = User(email="owner@example.com", timezone="UTC")
    user.set_password("password123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def make_integration(app, user):
    def _make(provider="telnyx", credentials=None, owner=None, **kwargs):
        integration = IntegrationAccount(
            user_id=(owner or user).id,
            provider=provider,
            display_name=f"{provider} line",
            encrypted_credentials=json.dumps(credentials or DEFAULT_CREDENTIALS[provider]),
            **kwargs,
        )
        db.session.add(integration)
        db.session.commit()
        ensure_sync_status(integration)
        return integration

    return _make


@pytest.fixture()
def integration(make_integration):
    return make_integration("telnyx")


@pytest.fixture()
def auth_client(client, user):
    resp = client.post(
        "/auth/login", json={"email": "owner@example.com", "password": "password123"}
    )
    assert resp.status_code == 200
    return client
