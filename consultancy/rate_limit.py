"""Fixed-window request limiting backed by AuthRateLimitBucket rows."""
from datetime import timedelta

from flask import current_app, g

from .models import AuthRateLimitBucket, db
from .responses import error_response
from .utils import get_request_ip, utc_now_naive

API_SCOPE = 'api'
LOGIN_SCOPE = 'auth_login'
API_LIMIT_MESSAGE = 'Too many requests, please try again later'
LOGIN_LIMIT_MESSAGE = 'Too many login attempts, please try again later'
EXEMPT_PREFIXES = ('/api/health', '/api/ready', '/api/webhooks/')
CLEANUP_EVERY = 50

_cleanup_call_counter = 0


def _cleanup_expired_buckets():
    """Periodically purge expired rate limit buckets to prevent table bloat."""
    now = utc_now_naive()
    try:
        AuthRateLimitBucket.query.filter(AuthRateLimitBucket.reset_at < now).delete(synchronize_session=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception('Failed to purge expired rate limit buckets.')


def get_bucket(scope, window_seconds):
    global _cleanup_call_counter
    _cleanup_call_counter += 1
    if _cleanup_call_counter % CLEANUP_EVERY == 0:
        _cleanup_expired_buckets()

    ip = get_request_ip()
    now = utc_now_naive()
    bucket = AuthRateLimitBucket.query.filter_by(scope=scope, ip=ip).first()
    if not bucket:
        bucket = AuthRateLimitBucket(
            scope=scope,
            ip=ip,
            count=0,
            reset_at=now + timedelta(seconds=window_seconds),
        )
        db.session.add(bucket)
        db.session.commit()
        return bucket
    if bucket.reset_at <= now:
        bucket.count = 0
        bucket.reset_at = now + timedelta(seconds=window_seconds)
        db.session.commit()
    return bucket


def seconds_until_reset(bucket):
    return max(1, int((bucket.reset_at - utc_now_naive()).total_seconds()))


def hit(scope, limit, window_seconds):
    """Count one request against the bucket; returns (allowed, remaining, reset_seconds)."""
    bucket = get_bucket(scope, window_seconds)
    if bucket.count >= limit:
        return False, 0, seconds_until_reset(bucket)
    bucket.count += 1
    db.session.commit()
    return True, max(0, limit - bucket.count), seconds_until_reset(bucket)


def limited_response(message, limit, reset_seconds):
    body, status = error_response(message, 429)
    body.headers['Retry-After'] = str(reset_seconds)
    body.headers['RateLimit-Limit'] = str(limit)
    body.headers['RateLimit-Remaining'] = '0'
    body.headers['RateLimit-Reset'] = str(reset_seconds)
    return body, status


def enforce_api_limit(path):
    if not current_app.config.get('RATE_LIMIT_ENABLED', True):
        return None
    if not path.startswith('/api/') or path.startswith(EXEMPT_PREFIXES):
        return None
    limit = int(current_app.config.get('RATE_LIMIT_MAX', 1000))
    window = int(current_app.config.get('RATE_LIMIT_WINDOW_SECONDS', 900))
    allowed, remaining, reset_seconds = hit(API_SCOPE, limit, window)
    if not allowed:
        current_app.logger.warning(f'API rate limit exceeded for {get_request_ip()}.')
        return limited_response(API_LIMIT_MESSAGE, limit, reset_seconds)
    g.rate_limit = (limit, remaining, reset_seconds)
    return None


def enforce_login_limit():
    if not current_app.config.get('RATE_LIMIT_ENABLED', True):
        return None
    limit = int(current_app.config.get('LOGIN_RATE_LIMIT_MAX', 100))
    window = int(current_app.config.get('LOGIN_RATE_LIMIT_WINDOW_SECONDS', 900))
    allowed, _remaining, reset_seconds = hit(LOGIN_SCOPE, limit, window)
    if not allowed:
        current_app.logger.warning(f'Login rate limit exceeded for {get_request_ip()}.')
        return limited_response(LOGIN_LIMIT_MESSAGE, limit, reset_seconds)
    return None
