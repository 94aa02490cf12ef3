"""HTTP surface: identity, typed error bodies and the main flows."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

from auth import reset_key
from config import get_settings
from database import UNIVERSITIES, USERS, VOUCHERS, create_document, get_db, utcnow
from main import app
from schemas import University


class TestBasics:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.json()["message"]

    def test_database_diagnostics(self, client):
        body = client.get("/test").json()
        assert body["backend"] == "✅ Running"
        assert body["connection_status"] == "Connected"

    def test_unconfigured_database(self, client):
        app.dependency_overrides[get_db] = lambda: None
        response = client.get("/voucher-templates")
        assert response.status_code == 500
        assert response.json()["message"] == "Database not configured"

    def test_backend_failure_is_reported_as_unavailable(self, client):
        broken = MagicMock()
        broken.__getitem__.return_value.find_one.side_effect = ServerSelectionTimeoutError("no servers")
        app.dependency_overrides[get_db] = lambda: broken
        response = client.get("/users/student-1/stats")
        assert response.status_code == 503
        assert response.json() == {
            "ok": False,
            "error": "BackendUnavailable",
            "message": "Rewards backend is temporarily unavailable",
        }


class TestUsers:
    def test_register_uses_authenticated_identity(self, auth_headers, client, db):
        payload = {"first_name": "Lindiwe", "last_name": "Dube"}
        response = client.post("/users", json=payload, headers=auth_headers("uid-9"))
        assert response.status_code == 200
        assert response.json() == {"ok": True, "id": "uid-9"}
        assert db[USERS].find_one({"_id": "uid-9"})["points_balance"] == 0

    def test_register_requires_identity(self, client):
        response = client.post("/users", json={"first_name": "Nobody"})
        assert response.status_code == 401
        assert response.json()["ok"] is False

    def test_stats_not_found(self, client):
        response = client.get("/users/nobody/stats")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_own_profile(self, auth_headers, client, make_user):
        user_id = make_user(email="lindiwe@uct.ac.za", university="uni-1")
        profile = client.get("/users/me", headers=auth_headers(user_id)).json()["profile"]
        assert profile["id"] == user_id
        assert profile["email"] == "lindiwe@uct.ac.za"
        assert profile["university"] == "uni-1"

    def test_public_profile_hides_email(self, client, make_user):
        user_id = make_user(email="lindiwe@uct.ac.za", display_name="Lindiwe")
        profile = client.get(f"/users/{user_id}").json()["profile"]
        assert profile["display_name"] == "Lindiwe"
        assert "email" not in profile

    def test_public_profile_not_found(self, client):
        response = client.get("/users/nobody")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_update_profile_changes_only_profile_fields(self, auth_headers, client, db, make_user):
        user_id = make_user(balance=40, university="uni-1", residence_hall="hall-1")
        response = client.patch(
            "/users/me",
            json={"university": "uni-2", "residence_hall": "hall-7", "points_balance": 99999},
            headers=auth_headers(user_id),
        )
        assert response.status_code == 200
        profile = response.json()["profile"]
        assert profile["university"] == "uni-2"
        assert profile["residence_hall"] == "hall-7"
        assert profile["points_balance"] == 40

        stored = db[USERS].find_one({"_id": user_id})
        assert stored["points_balance"] == 40
        assert stored["updated_at"] >= stored["created_at"]

    def test_update_profile_requires_identity(self, client, make_user):
        make_user()
        response = client.patch("/users/me", json={"university": "uni-2"})
        assert response.status_code == 401


class TestAuthentication:
    """Write routes act only for the subject of a verified access token."""

    def test_identity_header_alone_is_rejected(self, client, db, make_user, make_template):
        victim = make_user("victim", balance=100)
        template_id = make_template(points_cost=50)
        response = client.post("/vouchers", json={"template_id": template_id}, headers={"X-User-Id": victim})
        assert response.status_code == 401
        assert db[USERS].find_one({"_id": victim})["points_balance"] == 100
        assert db[VOUCHERS].count_documents({}) == 0

    def test_token_subject_is_the_acting_user(self, auth_headers, client, db, make_user, make_template):
        make_user("victim", balance=100)
        buyer = make_user("buyer", balance=100)
        template_id = make_template(points_cost=50)
        headers = {**auth_headers(buyer), "X-User-Id": "victim"}
        assert client.post("/vouchers", json={"template_id": template_id}, headers=headers).status_code == 200
        assert db[USERS].find_one({"_id": buyer})["points_balance"] == 50
        assert db[USERS].find_one({"_id": "victim"})["points_balance"] == 100

    @pytest.mark.parametrize(
        "token_kwargs",
        [
            {"secret": "some-other-signing-secret-0123456789abcdef"},
            {"expires_in": timedelta(minutes=-5)},
            {"aud": "another-service"},
            {"iss": "https://evil.example"},
            {"sub": ""},
        ],
        ids=["bad-signature", "expired", "wrong-audience", "wrong-issuer", "empty-subject"],
    )
    def test_invalid_tokens_are_rejected(self, token_kwargs, client, make_token, make_user):
        make_user()
        kwargs = dict(token_kwargs)
        user_id = kwargs.pop("sub", "student-1")
        token = make_token(user_id, **kwargs)
        response = client.post(
            "/activities",
            json={"material": "glass"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
        assert response.json()["ok"] is False

    def test_missing_verification_key(self, auth_headers, client, make_user, monkeypatch):
        user_id = make_user()
        monkeypatch.delenv("JWT_PUBLIC_KEY")
        get_settings.cache_clear()
        reset_key()
        response = client.post("/activities", json={"material": "glass"}, headers=auth_headers(user_id))
        assert response.status_code == 500
        assert response.json()["message"] == "Authentication not configured"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-Id": "req-42"})
        assert response.headers["X-Request-Id"] == "req-42"
        assert client.get("/").headers["X-Request-Id"]


class TestRecyclingFlow:
    def test_record_then_read_stats_and_impact(self, auth_headers, client, make_user):
        user_id = make_user()
        response = client.post("/activities", json={"material": "aluminum"}, headers=auth_headers(user_id))
        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["points"] == 7
        assert body["new_balance"] == 7

        stats = client.get(f"/users/{user_id}/stats").json()["stats"]
        assert stats["points_balance"] == 7

        impact = client.get(f"/users/{user_id}/impact").json()
        assert 0 < impact["impact_score"] <= 100

        environment = client.get(f"/users/{user_id}/environment").json()["stats"]
        assert environment["total_items"] == 1

        activities = client.get(f"/users/{user_id}/activities").json()["items"]
        assert len(activities) == 1
        transactions = client.get(f"/users/{user_id}/transactions").json()["items"]
        assert transactions[0]["type"] == "recycling"

    def test_duplicate_scan(self, auth_headers, client, make_user):
        user_id = make_user()
        payload = {"material": "glass", "barcode": "4006381333931"}
        assert client.post("/activities", json=payload, headers=auth_headers(user_id)).status_code == 200

        response = client.post("/activities", json=payload, headers=auth_headers(user_id))
        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateSubmission"

    def test_invalid_quantity(self, auth_headers, client, make_user):
        user_id = make_user()
        response = client.post("/activities", json={"material": "glass", "quantity": 0}, headers=auth_headers(user_id))
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_impact_for_new_user_is_zero(self, client, make_user):
        user_id = make_user()
        assert client.get(f"/users/{user_id}/impact").json()["impact_score"] == 0


class TestVoucherFlow:
    def test_generate_verify_redeem(self, auth_headers, client, make_user, make_template):
        user_id = make_user(balance=100)
        template_id = make_template(points_cost=50)

        created = client.post("/vouchers", json={"template_id": template_id}, headers=auth_headers(user_id))
        assert created.status_code == 200
        voucher = created.json()["voucher"]

        verified = client.get(f"/vouchers/verify/{voucher['voucher_code']}").json()
        assert verified["valid"] is True

        redeemed = client.post(f"/vouchers/{voucher['voucher_id']}/redeem", headers=auth_headers("vendor-cafe"))
        assert redeemed.status_code == 200
        assert redeemed.json()["voucher"]["redeemed_by"] == "vendor-cafe"

        again = client.post(f"/vouchers/{voucher['voucher_id']}/redeem", headers=auth_headers("vendor-cafe"))
        assert again.status_code == 409
        assert again.json()["error"] == "AlreadyRedeemed"

        listed = client.get(f"/users/{user_id}/vouchers", params={"status": "redeemed"}).json()["items"]
        assert len(listed) == 1

    def test_insufficient_points(self, auth_headers, client, make_user, make_template):
        user_id = make_user(balance=10)
        template_id = make_template(points_cost=50)
        response = client.post("/vouchers", json={"template_id": template_id}, headers=auth_headers(user_id))
        assert response.status_code == 409
        assert response.json() == {"ok": False, "error": "InsufficientPoints", "message": "Insufficient points"}

    def test_unknown_template(self, auth_headers, client, make_user):
        user_id = make_user(balance=10)
        response = client.post("/vouchers", json={"template_id": str(ObjectId())}, headers=auth_headers(user_id))
        assert response.status_code == 404
        assert response.json()["error"] == "TemplateNotFound"

    def test_expired_voucher(self, auth_headers, client, db, make_user, make_template):
        user_id = make_user(balance=100)
        template_id = make_template()
        voucher = client.post("/vouchers", json={"template_id": template_id}, headers=auth_headers(user_id)).json()["voucher"]
        db[VOUCHERS].update_one(
            {"_id": ObjectId(voucher["voucher_id"])},
            {"$set": {"expires_at": utcnow() - timedelta(days=1)}},
        )

        verified = client.get(f"/vouchers/verify/{voucher['voucher_code']}").json()
        assert verified == {
            "valid": False,
            "reason": "Expired",
            "message": "Voucher expired",
            "voucher_id": None,
            "voucher": None,
        }

        response = client.post(f"/vouchers/{voucher['voucher_id']}/redeem", headers=auth_headers("vendor-cafe"))
        assert response.status_code == 410
        assert response.json()["error"] == "Expired"

    def test_catalogue(self, client):
        assert client.post("/seed").json()["seeded"] is True
        templates = client.get("/voucher-templates").json()["items"]
        costs = [t["points_cost"] for t in templates]
        assert costs == sorted(costs)
        assert "food" in client.get("/voucher-categories").json()["items"]


class TestLeaderboards:
    def test_individual_ranking(self, client, make_user):
        make_user("low", balance=10)
        make_user("high", balance=90)
        make_user("mid", balance=50)
        items = client.get("/leaderboard/individual").json()["items"]
        assert [(i["rank"], i["user_id"]) for i in items] == [(1, "high"), (2, "mid"), (3, "low")]

    def test_university_ranking(self, client, db):
        create_document(db, UNIVERSITIES, University(name="A", total_points=100, student_count=4))
        create_document(db, UNIVERSITIES, University(name="B", total_points=300, student_count=3))
        items = client.get("/leaderboard/universities").json()["items"]
        assert [i["name"] for i in items] == ["B", "A"]
        assert items[0]["avg_points"] == 100.0
        assert items[1]["avg_points"] == 25.0

    def test_residence_ranking_empty(self, client):
        assert client.get("/leaderboard/residences").json() == {"ok": True, "items": []}
