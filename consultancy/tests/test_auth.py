import re
from datetime import timedelta

import jwt
import pytest

from consultancy.auth import hash_refresh_token
from consultancy.models import (
    TOKEN_STATUS_EXPIRED,
    TOKEN_STATUS_ISSUED,
    TOKEN_STATUS_REDEEMED,
    TOKEN_STATUS_REVOKED,
    RefreshToken,
    User,
    db,
    utc_now_naive,
)

from .conftest import ADMIN_EMAIL, ADMIN_PASSWORD, CUSTOMER_PASSWORD, login, refresh_cookie, register


def _token_record(app, raw_token):
    with app.app_context():
        record = RefreshToken.query.filter_by(token_hash=hash_refresh_token(raw_token)).one()
        return {"status": record.status, "family_id": record.family_id, "id": record.id}


def test_login_sets_access_and_refresh_cookies(client):
    response = login(client)
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["message"] == "Login successful"
    assert body["data"]["user"]["email"] == ADMIN_EMAIL
    assert body["data"]["user"]["role"] == "super_admin"
    assert body["data"]["accessToken"]

    cookies = response.headers.getlist("Set-Cookie")
    access = next(c for c in cookies if c.startswith("access_token="))
    refresh = next(c for c in cookies if c.startswith("refresh_token="))
    assert "HttpOnly" in access
    assert "Path=/;" in access or access.endswith("Path=/")
    assert "Path=/api/auth/refresh" in refresh
    assert "HttpOnly" in refresh


def test_login_rejects_bad_credentials_without_revealing_which(client):
    wrong_password = login(client, password="WrongPass123")
    unknown_email = login(client, email="nobody@example.com")
    assert wrong_password.status_code == 401
    assert unknown_email.status_code == 401
    assert wrong_password.get_json()["message"] == "Invalid email or password"
    assert unknown_email.get_json()["message"] == "Invalid email or password"


def test_login_validates_payload(client):
    response = client.post("/api/auth/login", json={"email": "not-an-email"})
    assert response.status_code == 422
    errors = response.get_json()["errors"]
    assert "email" in errors
    assert "password" in errors


def test_register_creates_customer_and_rejects_duplicates(client, app):
    response = register(client)
    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["user"]["role"] == "customer"
    assert data["user"]["email"] == "jane@example.com"

    duplicate = register(app.test_client(), name="Jane Again")
    assert duplicate.status_code == 409
    assert duplicate.get_json()["message"] == "Email already registered"


def test_register_requires_strong_password(client):
    response = register(client, password="weak")
    assert response.status_code == 422
    assert "password" in response.get_json()["errors"]


def test_current_user_requires_authentication(client):
    response = client.get("/api/auth/user")
    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required"

    garbage = client.get("/api/auth/user", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401
    assert garbage.get_json()["message"] == "Invalid token"


def test_expired_access_token_is_reported(client, app):
    now = utc_now_naive()
    token = jwt.encode(
        {"id": 1, "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1)},
        app.config["JWT_SECRET"],
        algorithm="HS256",
    )
    response = client.get("/api/auth/user", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.get_json()["message"] == "Token expired"


def test_bearer_token_authenticates(client):
    access_token = login(client).get_json()["data"]["accessToken"]
    other = client.application.test_client()
    response = other.get("/api/auth/user", headers={"Authorization": f"Bearer {access_token}"})
    assert response.status_code == 200
    assert response.get_json()["data"]["email"] == ADMIN_EMAIL


def test_deactivated_user_token_is_rejected(customer_client, app):
    with app.app_context():
        user = User.query.filter_by(email="jane@example.com").one()
        user.is_active = False
        db.session.commit()
    response = customer_client.get("/api/auth/user")
    assert response.status_code == 401
    assert response.get_json()["message"] == "Invalid or expired token"


def test_refresh_rotates_token_within_family(client, app):
    first = refresh_cookie(login(client))
    response = client.post("/api/auth/refresh")
    assert response.status_code == 200
    assert response.get_json()["message"] == "Token refreshed"
    second = refresh_cookie(response)
    assert second and second != first

    old = _token_record(app, first)
    new = _token_record(app, second)
    assert old["status"] == TOKEN_STATUS_REDEEMED
    assert new["status"] == TOKEN_STATUS_ISSUED
    assert old["family_id"] == new["family_id"]
    with app.app_context():
        assert db.session.get(RefreshToken, old["id"]).replaced_by_id == new["id"]


def test_refresh_token_reuse_revokes_whole_family(client, app):
    first = refresh_cookie(login(client))
    second = refresh_cookie(client.post("/api/auth/refresh"))

    attacker = app.test_client(use_cookies=False)
    replay = attacker.post("/api/auth/refresh", json={"refreshToken": first})
    assert replay.status_code == 401
    assert replay.get_json()["message"] == "Invalid or expired refresh token"

    assert _token_record(app, second)["status"] == TOKEN_STATUS_REVOKED
    legitimate = attacker.post("/api/auth/refresh", json={"refreshToken": second})
    assert legitimate.status_code == 401


def test_refresh_requires_a_token(client):
    response = client.post("/api/auth/refresh")
    assert response.status_code == 401
    assert response.get_json()["message"] == "Refresh token required"


def test_expired_refresh_token_moves_to_expired(client, app):
    raw = refresh_cookie(login(client))
    with app.app_context():
        record = RefreshToken.query.filter_by(token_hash=hash_refresh_token(raw)).one()
        record.expires_at = utc_now_naive() - timedelta(minutes=1)
        db.session.commit()

    response = client.post("/api/auth/refresh")
    assert response.status_code == 401
    assert _token_record(app, raw)["status"] == TOKEN_STATUS_EXPIRED


def test_token_states_after_issue_are_terminal(app):
    with app.app_context():
        admin = User.query.filter_by(email=ADMIN_EMAIL).one()
        token = RefreshToken(
            token_hash="a" * 64,
            family_id="f" * 32,
            user_id=admin.id,
            status=TOKEN_STATUS_ISSUED,
            expires_at=utc_now_naive() + timedelta(days=1),
        )
        token.transition(TOKEN_STATUS_REDEEMED)
        assert token.redeemed_at is not None
        for target in (TOKEN_STATUS_ISSUED, TOKEN_STATUS_REVOKED, TOKEN_STATUS_EXPIRED):
            with pytest.raises(ValueError):
                token.transition(target)


def test_logout_revokes_family_and_clears_cookies(client, app):
    raw = refresh_cookie(login(client))
    response = client.post("/api/auth/logout")
    assert response.status_code == 200
    assert response.get_json()["message"] == "Logged out successfully"
    assert _token_record(app, raw)["status"] == TOKEN_STATUS_REVOKED

    assert client.get("/api/auth/user").status_code == 401
    replay = app.test_client(use_cookies=False).post("/api/auth/refresh", json={"refreshToken": raw})
    assert replay.status_code == 401


def test_logout_without_session_still_succeeds(client):
    response = client.post("/api/auth/logout")
    assert response.status_code == 200


def test_profile_update_changes_name(customer_client):
    response = customer_client.patch("/api/auth/profile", json={"name": "Jane Updated", "phone": "07700 900123"})
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["name"] == "Jane Updated"
    assert data["phone"] == "07700 900123"


def test_profile_password_change_requires_current_password(customer_client, app):
    response = customer_client.patch("/api/auth/profile", json={"password": "NewPassword123"})
    assert response.status_code == 422
    assert "currentPassword" in response.get_json()["errors"]

    changed = customer_client.patch(
        "/api/auth/profile",
        json={"currentPassword": CUSTOMER_PASSWORD, "password": "NewPassword123"},
    )
    assert changed.status_code == 200
    assert login(app.test_client(), "jane@example.com", "NewPassword123").status_code == 200
    assert login(app.test_client(), "jane@example.com", CUSTOMER_PASSWORD).status_code == 401


def test_profile_email_conflict(customer_client):
    response = customer_client.patch("/api/auth/profile", json={"email": ADMIN_EMAIL})
    assert response.status_code == 409


def test_password_reset_flow_is_single_use(client, app, sent_emails):
    register(app.test_client())
    sent_emails.clear()

    response = client.post("/api/auth/forgot-password", json={"email": "jane@example.com"})
    assert response.status_code == 200
    assert len(sent_emails) == 1
    text = sent_emails[0].get_body(("plain",)).get_content()
    token = re.search(r"token=([A-Za-z0-9._-]+)", text).group(1)

    reset = client.post("/api/auth/reset-password", json={"token": token, "password": "ResetPass123"})
    assert reset.status_code == 200
    assert login(app.test_client(), "jane@example.com", "ResetPass123").status_code == 200

    again = client.post("/api/auth/reset-password", json={"token": token, "password": "Another123"})
    assert again.status_code == 400
    assert again.get_json()["message"] == "Invalid or expired reset token"


def test_forgot_password_does_not_reveal_unknown_email(client, sent_emails):
    response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert response.status_code == 200
    assert sent_emails == []


def test_customer_cannot_reach_admin_api(customer_client):
    response = customer_client.get("/api/admin/dashboard/stats")
    assert response.status_code == 403
    assert response.get_json()["message"] == "Insufficient permissions"


def test_anonymous_admin_request_is_unauthorized(client):
    response = client.get("/api/admin/dashboard/stats")
    assert response.status_code == 401


def test_login_rate_limit_returns_retry_after(tmp_path, monkeypatch):
    from .conftest import build_test_app

    app = build_test_app(tmp_path, monkeypatch, {"LOGIN_RATE_LIMIT_MAX": 2})
    client = app.test_client()
    assert login(client, password="Wrong1234").status_code == 401
    assert login(client, password="Wrong1234").status_code == 401
    limited = login(client, password=ADMIN_PASSWORD)
    assert limited.status_code == 429
    assert limited.get_json()["message"] == "Too many login attempts, please try again later"
    assert int(limited.headers["Retry-After"]) > 0
