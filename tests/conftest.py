"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import reset_key
from config import get_settings
from database import USERS, VOUCHER_TEMPLATES, create_document, ensure_indexes, get_db
from ledger import create_user_account
from main import app
from schemas import UserAccount, VoucherTemplate

NOW = datetime(2026, 3, 2, 12, 0, 0)

TOKEN_SECRET = "recycling-rewards-test-signing-secret-0123456789"
TOKEN_ISSUER = "https://auth.campus.test"
TOKEN_AUDIENCE = "recycling-rewards"


@pytest.fixture(autouse=True)
def auth_settings(monkeypatch):
    """Verify tokens against a shared test secret instead of the provider key."""
    monkeypatch.setenv("JWT_PUBLIC_KEY", TOKEN_SECRET)
    monkeypatch.setenv("JWT_ALGORITHM", "HS256")
    monkeypatch.setenv("JWT_ISSUER", TOKEN_ISSUER)
    monkeypatch.setenv("JWT_AUDIENCE", TOKEN_AUDIENCE)
    get_settings.cache_clear()
    reset_key()
    yield
    get_settings.cache_clear()
    reset_key()


@pytest.fixture
def make_token():
    """Factory for provider-style access tokens."""

    def _make(user_id, secret=TOKEN_SECRET, expires_in=timedelta(minutes=15), **claims):
        payload = {
            "sub": user_id,
            "iss": TOKEN_ISSUER,
            "aud": TOKEN_AUDIENCE,
            "exp": datetime.now(timezone.utc) + expires_in,
        }
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def auth_headers(make_token):
    """Authorization header for a user id."""

    def _make(user_id):
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _make


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    """Fresh in-process Mongo database with the production indexes."""
    database = mongomock.MongoClient()["recycling_rewards_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def make_user(db):
    """Factory creating a registered user, optionally with a starting balance."""

    def _make(user_id="student-1", balance=0, **profile):
        create_user_account(db, user_id, UserAccount(first_name="Test", last_name=user_id, **profile))
        if balance:
            db[USERS].update_one(
                {"_id": user_id},
                {"$set": {"points_balance": balance, "total_points_earned": balance}},
            )
        return user_id

    return _make


@pytest.fixture
def make_template(db):
    """Factory inserting a voucher template and returning its id."""

    def _make(**overrides):
        fields = {
            "name": "Free coffee",
            "points_cost": 50,
            "vendor_name": "Campus Cafe",
            "category": "food",
            "discount_type": "free_item",
        }
        fields.update(overrides)
        return create_document(db, VOUCHER_TEMPLATES, VoucherTemplate(**fields))

    return _make


@pytest.fixture
def client(db):
    """TestClient wired to the mongomock database."""
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
