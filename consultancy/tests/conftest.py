import uuid

import pytest

from consultancy import create_app
from consultancy.models import AuthRateLimitBucket, Service, db

ADMIN_EMAIL = "admin@consultancy.com"
ADMIN_PASSWORD = "AdminPass123"
CUSTOMER_PASSWORD = "Customer123"


def build_test_app(tmp_path, monkeypatch, overrides=None):
    db_path = tmp_path / f"consultancy_test_{uuid.uuid4().hex[:8]}.db"
    upload_path = tmp_path / f"uploads_{uuid.uuid4().hex[:8]}"

    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)

    config = {
        "TESTING": True,
        "APP_ENV": "test",
        "SECRET_KEY": "test-secret-key-for-sessions-0123456789",
        "JWT_SECRET": "test-jwt-secret-0123456789abcdef0123456789",
        "JWT_REFRESH_SECRET": "test-refresh-secret-0123456789abcdef012345",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "SQLALCHEMY_ENGINE_OPTIONS": {},
        "UPLOAD_FOLDER": str(upload_path),
        "ADMIN_EMAIL": ADMIN_EMAIL,
        "EMAIL_ENABLED": False,
        "STRIPE_SECRET_KEY": "",
        "STRIPE_WEBHOOK_SECRET": "",
        "SUITEDASH_PUBLIC_ID": "",
        "SUITEDASH_SECRET_KEY": "",
        "RINGCENTRAL_CLIENT_ID": "",
        "RINGCENTRAL_CLIENT_SECRET": "",
        "RINGCENTRAL_JWT_TOKEN": "",
        "AUTH_COOKIE_SECURE": False,
        "AUTH_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": False,
        "TRUST_PROXY_HEADERS": False,
        "SENTRY_DSN": "",
        "LOG_JSON": False,
        "FRONTEND_URL": "http://localhost:5173",
    }
    if overrides:
        config.update(overrides)

    app = create_app(config)
    with app.app_context():
        AuthRateLimitBucket.query.delete()
        db.session.commit()
    return app


@pytest.fixture()
def app(tmp_path, monkeypatch):
    return build_test_app(tmp_path, monkeypatch)


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def register(client, email="jane@example.com", name="Jane Customer", password=CUSTOMER_PASSWORD):
    return client.post("/api/auth/register", json={"name": name, "email": email, "password": password})


def refresh_cookie(response):
    for header in response.headers.getlist("Set-Cookie"):
        if header.startswith("refresh_token="):
            return header.split(";", 1)[0].split("=", 1)[1]
    return None


@pytest.fixture()
def admin_client(app):
    admin = app.test_client()
    response = login(admin)
    assert response.status_code == 200, response.get_json()
    return admin


@pytest.fixture()
def customer_client(app):
    customer = app.test_client()
    response = register(customer)
    assert response.status_code == 201, response.get_json()
    return customer


@pytest.fixture()
def sent_emails(app, monkeypatch):
    sent = []

    def fake_send(message, transport):
        sent.append(message)

    app.config.update(EMAIL_ENABLED=True, SMTP_HOST="smtp.test.local", EMAIL_FROM="noreply@consultancy.test")
    monkeypatch.setattr("consultancy.notifications._send_via_smtp", fake_send)
    return sent


def service_id(app, slug):
    with app.app_context():
        return Service.query.filter_by(slug=slug).one().id
