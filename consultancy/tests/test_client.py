import pytest
import requests

from consultancy.client import REFRESH_INTERVAL, AuthError, AuthSession, current_session, use_session

from .conftest import ADMIN_EMAIL, ADMIN_PASSWORD

BASE_URL = "http://localhost/api"


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON")
        return self._payload


class FakeCookies:
    def __init__(self):
        self.cleared = False

    def clear(self):
        self.cleared = True


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.cookies = FakeCookies()

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "headers": headers, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FlaskHttp:
    """Routes AuthSession traffic through the Flask test client."""

    def __init__(self, app):
        self.app = app
        self.client = app.test_client()
        self.cookies = self

    def clear(self):
        self.client = self.app.test_client()

    def request(self, method, url, headers=None, timeout=None, json=None):
        response = self.client.open(url[len("http://localhost"):], method=method, headers=headers, json=json)
        return FakeResponse(response.status_code, response.get_json())


def _login_reply(role="customer"):
    return FakeResponse(200, {
        "success": True,
        "data": {"user": {"id": 1, "email": "jane@example.com", "role": role}, "accessToken": "access-1"},
    })


def test_login_stores_user_and_token():
    http = FakeHttp(_login_reply())
    session = AuthSession(BASE_URL, http=http, clock=lambda: 1000.0)

    user = session.login("jane@example.com", "Customer123")
    assert user["email"] == "jane@example.com"
    assert session.is_authenticated
    assert not session.is_admin
    assert session.is_loading is False
    assert session.last_refreshed_at == 1000.0
    assert http.calls[0]["url"] == "http://localhost/api/auth/login"
    assert http.calls[0]["json"] == {"email": "jane@example.com", "password": "Customer123"}


def test_permission_checks_follow_user_payload():
    http = FakeHttp(FakeResponse(200, {
        "success": True,
        "data": {"user": {"id": 3, "role": "admin", "permissions": ["orders:manage"]}, "accessToken": "a"},
    }))
    session = AuthSession(BASE_URL, http=http)
    assert session.has_permission("orders:manage") is False
    session.login("ops@consultancy.com", "OpsAdmin123")
    assert session.has_permission("orders:manage") is True
    assert session.has_permission("integrations:manage") is False


def test_login_failure_raises_auth_error():
    http = FakeHttp(FakeResponse(401, {"success": False, "message": "Invalid email or password"}))
    session = AuthSession(BASE_URL, http=http)
    with pytest.raises(AuthError) as excinfo:
        session.login("jane@example.com", "wrong")
    assert excinfo.value.message == "Invalid email or password"
    assert excinfo.value.status_code == 401
    assert not session.is_authenticated


def test_login_network_failure_raises_auth_error():
    session = AuthSession(BASE_URL, http=FakeHttp(requests.ConnectionError("down")))
    with pytest.raises(AuthError, match="Unable to reach the server"):
        session.login("jane@example.com", "Customer123")


def test_register_sends_optional_phone():
    http = FakeHttp(FakeResponse(201, {
        "success": True,
        "data": {"user": {"id": 2, "email": "new@example.com", "role": "customer"}, "accessToken": "access-2"},
    }))
    session = AuthSession(BASE_URL, http=http)
    session.register("New Person", "new@example.com", "Password123", phone="07700 900123")
    assert http.calls[0]["json"]["phone"] == "07700 900123"
    assert session.access_token == "access-2"


def test_refresh_is_due_after_interval():
    now = [0.0]
    session = AuthSession(BASE_URL, http=FakeHttp(_login_reply()), clock=lambda: now[0])
    assert session.refresh_due() is False
    session.login("jane@example.com", "Customer123")
    assert session.refresh_due() is False
    assert session.refresh_due(now=REFRESH_INTERVAL - 1) is False
    now[0] = REFRESH_INTERVAL
    assert session.refresh_due() is True


def test_request_refreshes_when_due_and_sends_bearer_token():
    now = [0.0]
    refreshed = FakeResponse(200, {"success": True, "data": {"accessToken": "access-2"}})
    http = FakeHttp(_login_reply(), refreshed, FakeResponse(200, {"success": True, "data": []}))
    session = AuthSession(BASE_URL, http=http, clock=lambda: now[0])
    session.login("jane@example.com", "Customer123")

    now[0] = REFRESH_INTERVAL + 5
    response, payload = session.request("GET", "/orders/my-orders")
    assert response.status_code == 200
    assert [call["url"] for call in http.calls[1:]] == [
        "http://localhost/api/auth/refresh",
        "http://localhost/api/orders/my-orders",
    ]
    assert http.calls[2]["headers"]["Authorization"] == "Bearer access-2"
    assert session.last_refreshed_at == REFRESH_INTERVAL + 5
    assert session.user["email"] == "jane@example.com"


def test_request_retries_once_after_401():
    http = FakeHttp(
        _login_reply(),
        FakeResponse(401, {"success": False, "message": "Token expired"}),
        FakeResponse(200, {"success": True, "data": {"accessToken": "access-2"}}),
        FakeResponse(200, {"success": True, "data": {"ok": True}}),
    )
    session = AuthSession(BASE_URL, http=http)
    session.login("jane@example.com", "Customer123")
    response, payload = session.request("GET", "/auth/user")
    assert response.status_code == 200
    assert payload["data"] == {"ok": True}
    assert len(http.calls) == 4


def test_failed_refresh_logs_out_locally():
    http = FakeHttp(
        _login_reply(),
        FakeResponse(401, {"success": False, "message": "Token expired"}),
        FakeResponse(401, {"success": False, "message": "Invalid or expired refresh token"}),
    )
    session = AuthSession(BASE_URL, http=http)
    session.login("jane@example.com", "Customer123")
    response, _payload = session.request("GET", "/auth/user")
    assert response.status_code == 401
    assert not session.is_authenticated
    assert session.access_token is None


def test_logout_clears_state_even_when_server_unreachable():
    http = FakeHttp(_login_reply("admin"), requests.ConnectionError("down"))
    session = AuthSession(BASE_URL, http=http)
    session.login("admin@consultancy.com", "AdminPass123")
    assert session.is_admin

    session.logout()
    assert not session.is_authenticated
    assert http.cookies.cleared is True


def test_load_restores_or_clears_user():
    http = FakeHttp(
        FakeResponse(200, {"success": True, "data": {"id": 1, "role": "customer"}}),
        FakeResponse(401, {"success": False, "message": "Authentication required"}),
        FakeResponse(502, None),
    )
    session = AuthSession(BASE_URL, http=http)
    assert session.load() == {"id": 1, "role": "customer"}
    assert session.is_loading is False
    assert session.load() is None
    assert session.load() is None


def test_load_starts_refresh_timer():
    now = [50.0]
    http = FakeHttp(FakeResponse(200, {"success": True, "data": {"id": 1, "role": "customer"}}))
    session = AuthSession(BASE_URL, http=http, clock=lambda: now[0])
    session.load()
    assert session.last_refreshed_at == 50.0
    assert session.refresh_due() is False
    now[0] = 50.0 + REFRESH_INTERVAL
    assert session.refresh_due() is True


def test_current_session_requires_context():
    with pytest.raises(RuntimeError):
        current_session()

    session = AuthSession(BASE_URL, http=FakeHttp())
    with use_session(session) as active:
        assert current_session() is active
    with pytest.raises(RuntimeError):
        current_session()


def test_client_against_running_app(app):
    http = FlaskHttp(app)
    session = AuthSession(BASE_URL, http=http)

    session.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    assert session.is_admin

    response, payload = session.request("GET", "/admin/dashboard/stats")
    assert response.status_code == 200
    assert payload["success"] is True

    assert session.refresh() is True
    assert session.access_token

    session.logout()
    assert session.load() is None
