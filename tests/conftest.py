from types import SimpleNamespace

import pytest

import ai
import database
from models import User, UserSubscription
from ratelimit import limiter

JWT_SECRET = "test-secret-key-long-enough-for-hs256-signing"


class FakeCompletions:
    """Stands in for client.chat.completions; replies and errors are consumed in order."""

    def __init__(self):
        self.replies = []
        self.errors = []
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        text = self.replies.pop(0) if self.replies else "ok"
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    limiter.reset()
    monkeypatch.setattr(ai, "client", None)
    yield
    limiter.reset()


@pytest.fixture
def fake_ai(request, monkeypatch):
    # create_app() reconfigures the client, so build the app first when a test uses one
    if "app" in request.fixturenames:
        request.getfixturevalue("app")
    completions = FakeCompletions()
    monkeypatch.setattr(ai, "client", SimpleNamespace(chat=SimpleNamespace(completions=completions)))
    return completions


@pytest.fixture
def session(tmp_path):
    database.init_engine(f"sqlite:///{tmp_path / 'unit.db'}")
    database.init_db()
    s = database.SessionLocal()
    yield s
    s.close()


@pytest.fixture
def user(session):
    u = User(email="sam@example.com", password_hash="x", full_name="Sam")
    session.add(u)
    session.commit()
    return u


@pytest.fixture
def set_tier():
    def _set_tier(session, user_id, tier, status="active", stripe_subscription_id=None):
        sub = session.query(UserSubscription).filter_by(user_id=user_id).first()
        if sub is None:
            sub = UserSubscription(user_id=user_id)
            session.add(sub)
        sub.subscription_tier = tier
        sub.status = status
        sub.stripe_subscription_id = stripe_subscription_id
        session.commit()
        return sub

    return _set_tier


@pytest.fixture
def app(tmp_path):
    from app import create_app

    app = create_app({
        "TESTING": True,
        "DATABASE_URL": f"sqlite:///{tmp_path / 'api.db'}",
        "JWT_SECRET_KEY": JWT_SECRET,
        "OPENAI_API_KEY": None,
        "STRIPE_SECRET_KEY": None,
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "STRIPE_PRICE_IDS": "",
        "TYPING_INTERVAL_MS": 0,
    })
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register(client):
    """register(email) -> (user_id, auth headers)"""

    def _register(email="alex@example.com", password="correct-horse"):
        resp = client.post("/auth/register", json={"email": email, "password": password})
        assert resp.status_code == 201, resp.get_json()
        data = resp.get_json()
        return data["user"]["id"], {"Authorization": f"Bearer {data['access_token']}"}

    return _register


@pytest.fixture
def db(app):
    s = database.SessionLocal()
    yield s
    s.close()
