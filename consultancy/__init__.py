import json
import logging
import os
import re
import secrets
import time
import warnings

import sentry_sdk
from flask import Flask, g, has_request_context, request
from flask_cors import CORS
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sqlalchemy import text
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import login_manager
from .config import Config
from .errors import register_error_handlers
from .models import Pillar, SiteSetting, User, db
from .payments import init_stripe
from .rate_limit import enforce_api_limit
from .utils import utc_now_naive

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,80}$")
_sentry_initialized = False
_STARTED_AT = time.monotonic()


class JsonLogFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'time': self.formatTime(record, self.datefmt),
        }
        if has_request_context():
            payload.update(
                {
                    'request_id': getattr(g, 'request_id', ''),
                    'method': request.method,
                    'path': request.path,
                    'remote_ip': request.remote_addr,
                }
            )
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(app):
    app.logger.setLevel(getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))
    if not app.config.get('LOG_JSON', True):
        return
    formatter = JsonLogFormatter()
    for handler in app.logger.handlers:
        handler.setFormatter(formatter)


def init_sentry(app):
    global _sentry_initialized
    if _sentry_initialized:
        return

    dsn = (app.config.get('SENTRY_DSN') or '').strip()
    if not dsn:
        return

    try:
        traces_sample_rate = float(app.config.get('SENTRY_TRACES_SAMPLE_RATE') or 0.0)
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=traces_sample_rate,
            environment=(app.config.get('SENTRY_ENVIRONMENT') or None),
            release=app.config.get('APP_VERSION') or None,
        )
        _sentry_initialized = True
        app.logger.info('Sentry monitoring enabled.')
    except Exception:
        app.logger.exception('Failed to initialize Sentry monitoring.')


def _check_required_secrets(app):
    if app.config.get('APP_ENV') == 'production':
        missing = [
            name
            for name, present in (
                ('DATABASE_URL', app.config.get('DATABASE_URL_CONFIGURED')),
                ('JWT_SECRET', app.config.get('JWT_SECRET')),
                ('JWT_REFRESH_SECRET', app.config.get('JWT_REFRESH_SECRET')),
                ('SECRET_KEY', app.config.get('SECRET_KEY')),
            )
            if not present
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
        return

    for name in ('SECRET_KEY', 'JWT_SECRET', 'JWT_REFRESH_SECRET'):
        if not app.config.get(name):
            app.config[name] = secrets.token_urlsafe(48)
            warnings.warn(
                f'{name} is not set; using a random value. '
                'Sessions and tokens will not survive restarts.',
                stacklevel=3,
            )


def create_app(config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    configure_logging(app)
    _check_required_secrets(app)

    if app.config.get('TRUST_PROXY_HEADERS'):
        # Only trust one proxy hop (the platform edge) when explicitly enabled.
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    init_sentry(app)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)
    CORS(
        app,
        resources={r'/api/*': {'origins': app.config.get('CORS_ORIGINS') or []}},
        supports_credentials=True,
        expose_headers=['X-Request-ID', 'RateLimit-Limit', 'RateLimit-Remaining', 'RateLimit-Reset', 'Retry-After'],
    )
    init_stripe(app)
    register_error_handlers(app)

    @app.before_request
    def assign_request_id():
        g.request_started = time.perf_counter()
        incoming = (request.headers.get('X-Request-ID') or '').strip()
        if _REQUEST_ID_RE.match(incoming):
            g.request_id = incoming
        else:
            g.request_id = secrets.token_hex(16)

    @app.before_request
    def apply_rate_limit():
        if request.method == 'OPTIONS':
            return None
        return enforce_api_limit(request.path)

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('Permissions-Policy', 'geolocation=(), microphone=(), camera=()')
        response.headers.setdefault('Cross-Origin-Resource-Policy', 'same-origin')
        response.headers.setdefault('X-Permitted-Cross-Domain-Policies', 'none')
        response.headers.setdefault('Origin-Agent-Cluster', '?1')
        response.headers.setdefault('Cross-Origin-Opener-Policy', 'same-origin')
        if request.is_secure and app.config.get('HSTS_ENABLED', True):
            hsts_max_age = max(0, int(app.config.get('HSTS_MAX_AGE', 31536000)))
            response.headers.setdefault('Strict-Transport-Security', f'max-age={hsts_max_age}; includeSubDomains')

        rate_limit = getattr(g, 'rate_limit', None)
        if rate_limit:
            limit, remaining, reset_seconds = rate_limit
            response.headers.setdefault('RateLimit-Limit', str(limit))
            response.headers.setdefault('RateLimit-Remaining', str(remaining))
            response.headers.setdefault('RateLimit-Reset', str(reset_seconds))

        if request.path.startswith('/api/') and response.mimetype == 'application/json':
            response.headers.setdefault('Cache-Control', 'no-store')
        return response

    @app.after_request
    def write_access_log(response):
        if app.config.get('ACCESS_LOG_ENABLED', True) and request.path.startswith('/api/'):
            started = getattr(g, 'request_started', None)
            duration_ms = int((time.perf_counter() - started) * 1000) if started else 0
            app.logger.info(f'{request.method} {request.path} {response.status_code} {duration_ms}ms')
        return response

    @app.get('/api/health')
    def health():
        started = time.perf_counter()
        database = {'status': 'disconnected', 'latency_ms': None}
        try:
            probe_started = time.perf_counter()
            db.session.execute(text('SELECT 1'))
            database = {'status': 'connected', 'latency_ms': int((time.perf_counter() - probe_started) * 1000)}
        except Exception:
            db.session.rollback()
            app.logger.exception('Health check DB probe failed.')
        healthy = database['status'] == 'connected'
        payload = {
            'status': 'healthy' if healthy else 'degraded',
            'timestamp': utc_now_naive().isoformat() + 'Z',
            'uptime': int(time.monotonic() - _STARTED_AT),
            'environment': app.config.get('APP_ENV'),
            'version': app.config.get('APP_VERSION'),
            'checks': {'database': database},
            'response_time_ms': int((time.perf_counter() - started) * 1000),
        }
        return payload, (200 if healthy else 503)

    @app.get('/api/ready')
    def ready():
        checks = {
            'database': False,
            'site_settings_seeded': False,
            'admin_user_seeded': False,
            'pillars_seeded': False,
        }
        try:
            db.session.execute(text('SELECT 1'))
            checks['database'] = True
            checks['site_settings_seeded'] = db.session.query(SiteSetting.id).first() is not None
            checks['admin_user_seeded'] = db.session.query(User.id).first() is not None
            checks['pillars_seeded'] = db.session.query(Pillar.id).first() is not None
            all_ready = all(checks.values())
            return {'status': 'ready' if all_ready else 'warming', 'checks': checks}, (200 if all_ready else 503)
        except Exception:
            db.session.rollback()
            app.logger.exception('Readiness check failed.')
            return {'status': 'degraded', 'checks': checks}, 503

    from .routes.admin import admin_bp
    from .routes.auth import auth_bp
    from .routes.public import public_bp
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')
    app.register_blueprint(webhooks_bp, url_prefix='/api/webhooks')
    app.register_blueprint(public_bp, url_prefix='/api')

    with app.app_context():
        try:
            db.create_all()
        except Exception:
            app.logger.exception('db.create_all() failed; tables may need manual migration.')
        try:
            from .seed import seed_database

            seed_database()
        except Exception:
            db.session.rollback()
            app.logger.exception('seed_database() failed; seeding skipped.')

    return app
