import os
import tempfile
from urllib.parse import urlparse

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(os.path.dirname(basedir), '.env'))

ENV_DEVELOPMENT = 'development'
ENV_PRODUCTION = 'production'
ENV_TEST = 'test'


def _app_env():
    raw = (os.environ.get('APP_ENV') or os.environ.get('FLASK_ENV') or ENV_DEVELOPMENT).strip().lower()
    if raw in {'prod', ENV_PRODUCTION}:
        return ENV_PRODUCTION
    if raw in {'test', 'testing'}:
        return ENV_TEST
    return ENV_DEVELOPMENT


def _is_production_runtime():
    return _app_env() == ENV_PRODUCTION


def _as_bool(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in {'1', 'true', 'yes', 'on'}


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_list(value, default=''):
    raw = value if value is not None else default
    return [item.strip().rstrip('/') for item in str(raw).split(',') if item.strip()]


def _database_url():
    raw = (os.environ.get('DATABASE_URL') or '').strip()
    if raw.startswith('postgres://'):
        raw = raw.replace('postgres://', 'postgresql://', 1)
    if raw:
        return raw
    return 'sqlite:///' + os.path.join(basedir, 'consultancy.db')


def _database_engine_options(database_url):
    if database_url.startswith('sqlite'):
        return {}
    options = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }
    parsed = urlparse(database_url)
    if parsed.scheme.startswith('postgresql'):
        connect_timeout_seconds = max(1, _as_int(os.environ.get('DB_CONNECT_TIMEOUT_SECONDS'), 5))
        statement_timeout_ms = max(1000, _as_int(os.environ.get('DB_STATEMENT_TIMEOUT_MS'), 8000))
        options['connect_args'] = {
            'connect_timeout': connect_timeout_seconds,
            'options': f'-c statement_timeout={statement_timeout_ms}',
        }
    return options


class Config:
    APP_ENV = _app_env()
    APP_VERSION = (os.environ.get('APP_VERSION') or '1.0.0').strip()
    PORT = _as_int(os.environ.get('PORT'), 8000)
    SECRET_KEY = os.environ.get('SECRET_KEY') or ''
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_ENGINE_OPTIONS = _database_engine_options(SQLALCHEMY_DATABASE_URI)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DATABASE_URL_CONFIGURED = bool((os.environ.get('DATABASE_URL') or '').strip())

    JWT_SECRET = os.environ.get('JWT_SECRET') or ''
    JWT_REFRESH_SECRET = os.environ.get('JWT_REFRESH_SECRET') or ''
    JWT_ALGORITHM = 'HS256'
    ACCESS_TOKEN_TTL_SECONDS = _as_int(os.environ.get('ACCESS_TOKEN_TTL_SECONDS'), 15 * 60)
    REFRESH_TOKEN_TTL_SECONDS = _as_int(os.environ.get('REFRESH_TOKEN_TTL_SECONDS'), 7 * 24 * 3600)
    AUTH_COOKIE_SECURE = _as_bool(os.environ.get('AUTH_COOKIE_SECURE'), _is_production_runtime())
    AUTH_COOKIE_SAMESITE = 'Strict' if _is_production_runtime() else 'Lax'

    SESSION_COOKIE_NAME = 'consultancy_session'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = AUTH_COOKIE_SECURE

    CORS_ORIGINS = _as_list(os.environ.get('CORS_ORIGIN'), 'http://localhost:5173')
    FRONTEND_URL = (os.environ.get('FRONTEND_URL') or (CORS_ORIGINS[0] if CORS_ORIGINS else 'http://localhost:5173')).rstrip('/')
    TRUST_PROXY_HEADERS = _as_bool(os.environ.get('TRUST_PROXY_HEADERS'), False)
    HSTS_ENABLED = _as_bool(os.environ.get('HSTS_ENABLED'), True)
    HSTS_MAX_AGE = _as_int(os.environ.get('HSTS_MAX_AGE'), 31536000)

    UPLOAD_FOLDER = (os.environ.get('UPLOAD_FOLDER') or '').strip() or os.path.join(tempfile.gettempdir(), 'consultancy-uploads')
    MAX_CONTENT_LENGTH = 8 * 1024 * 1024
    MAX_UPLOAD_IMAGE_PIXELS = _as_int(os.environ.get('MAX_UPLOAD_IMAGE_PIXELS'), 40_000_000)
    ALLOWED_UPLOAD_MIME_TYPES = {
        'image/png',
        'image/jpeg',
        'image/gif',
        'image/webp',
        'image/x-icon',
        'image/vnd.microsoft.icon',
    }

    RATE_LIMIT_ENABLED = _as_bool(os.environ.get('RATE_LIMIT_ENABLED'), True)
    RATE_LIMIT_WINDOW_SECONDS = _as_int(os.environ.get('RATE_LIMIT_WINDOW_SECONDS'), 15 * 60)
    RATE_LIMIT_MAX = _as_int(os.environ.get('RATE_LIMIT_MAX'), 100 if _is_production_runtime() else 1000)
    LOGIN_RATE_LIMIT_WINDOW_SECONDS = _as_int(os.environ.get('LOGIN_RATE_LIMIT_WINDOW_SECONDS'), 15 * 60)
    LOGIN_RATE_LIMIT_MAX = _as_int(os.environ.get('LOGIN_RATE_LIMIT_MAX'), 10 if _is_production_runtime() else 100)

    SENDGRID_API_KEY = (os.environ.get('SENDGRID_API_KEY') or '').strip()
    SMTP_HOST = (os.environ.get('SMTP_HOST') or ('' if _is_production_runtime() else 'smtp.ethereal.email')).strip()
    SMTP_PORT = _as_int(os.environ.get('SMTP_PORT'), 587)
    SMTP_USERNAME = (os.environ.get('SMTP_USERNAME') or os.environ.get('ETHEREAL_USER') or '').strip()
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD') or os.environ.get('ETHEREAL_PASS') or ''
    SMTP_USE_TLS = _as_bool(os.environ.get('SMTP_USE_TLS'), True)
    SMTP_USE_SSL = _as_bool(os.environ.get('SMTP_USE_SSL'), False)
    EMAIL_ENABLED = _as_bool(os.environ.get('EMAIL_ENABLED'), True)
    EMAIL_FROM = (os.environ.get('EMAIL_FROM') or 'noreply@consultancy.com').strip()
    EMAIL_FROM_NAME = (os.environ.get('EMAIL_FROM_NAME') or 'Consultancy Platform').strip()

    STRIPE_SECRET_KEY = (os.environ.get('STRIPE_SECRET_KEY') or '').strip()
    STRIPE_WEBHOOK_SECRET = (os.environ.get('STRIPE_WEBHOOK_SECRET') or '').strip()
    STRIPE_CURRENCY = (os.environ.get('STRIPE_CURRENCY') or 'gbp').strip().lower()
    VAT_RATE = _as_float(os.environ.get('VAT_RATE'), 0.20)

    SUITEDASH_PUBLIC_ID = (os.environ.get('SUITEDASH_PUBLIC_ID') or '').strip()
    SUITEDASH_SECRET_KEY = (os.environ.get('SUITEDASH_SECRET_KEY') or '').strip()
    SUITEDASH_API_BASE_URL = (os.environ.get('SUITEDASH_API_BASE_URL') or 'https://app.suitedash.com/secure-api').rstrip('/')
    SUITEDASH_TIMEOUT_SECONDS = _as_int(os.environ.get('SUITEDASH_TIMEOUT_SECONDS'), 30)

    RINGCENTRAL_CLIENT_ID = (os.environ.get('RINGCENTRAL_CLIENT_ID') or '').strip()
    RINGCENTRAL_CLIENT_SECRET = (os.environ.get('RINGCENTRAL_CLIENT_SECRET') or '').strip()
    RINGCENTRAL_JWT_TOKEN = (os.environ.get('RINGCENTRAL_JWT_TOKEN') or '').strip()
    RINGCENTRAL_SERVER_URL = (os.environ.get('RINGCENTRAL_SERVER_URL') or 'https://platform.ringcentral.com').rstrip('/')
    RINGCENTRAL_TIMEOUT_SECONDS = _as_int(os.environ.get('RINGCENTRAL_TIMEOUT_SECONDS'), 30)

    ADMIN_EMAIL = (os.environ.get('ADMIN_EMAIL') or 'admin@consultancy.com').strip().lower()
    ADMIN_NAME = (os.environ.get('ADMIN_NAME') or 'Admin User').strip()

    SENTRY_DSN = (os.environ.get('SENTRY_DSN') or '').strip()
    SENTRY_ENVIRONMENT = (os.environ.get('SENTRY_ENVIRONMENT') or APP_ENV).strip()
    SENTRY_TRACES_SAMPLE_RATE = _as_float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE'), 0.0)
    LOG_JSON = _as_bool(os.environ.get('LOG_JSON'), True)
    LOG_LEVEL = (os.environ.get('LOG_LEVEL') or 'INFO').strip().upper()
    ACCESS_LOG_ENABLED = _as_bool(os.environ.get('ACCESS_LOG_ENABLED'), True)
