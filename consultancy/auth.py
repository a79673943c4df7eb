"""Access tokens, rotating refresh tokens and request authentication.

Access tokens are short-lived HS256 JWTs. Refresh tokens are opaque random
strings stored as keyed hashes and move through an explicit state machine
(issued -> redeemed | expired | revoked). Every refresh token belongs to a
family started at login; presenting an already redeemed token is treated as
theft and revokes the whole family.
"""
from datetime import timedelta
from functools import wraps
import hashlib
import hmac
import secrets

import bcrypt
import jwt
from flask import current_app, g, request
from flask_login import LoginManager, current_user

from .errors import ApiError
from .models import (
    ADMIN_ROLES,
    TOKEN_STATUS_EXPIRED,
    TOKEN_STATUS_ISSUED,
    TOKEN_STATUS_REDEEMED,
    TOKEN_STATUS_REVOKED,
    RefreshToken,
    User,
    db,
    utc_now_naive,
)
from .responses import error_response
from .utils import clean_text, get_request_ip

ACCESS_COOKIE_NAME = 'access_token'
REFRESH_COOKIE_NAME = 'refresh_token'
REFRESH_COOKIE_PATH = '/api/auth/refresh'
REFRESH_TOKEN_BYTES = 64
AUTH_DUMMY_HASH = bcrypt.hashpw(b'consultancy::dummy-auth-check', bcrypt.gensalt()).decode('utf-8')

login_manager = LoginManager()


class AuthError(ApiError):
    status_code = 401


def _jwt_secret():
    return current_app.config['JWT_SECRET']


def _refresh_secret():
    return current_app.config['JWT_REFRESH_SECRET']


def hash_refresh_token(raw_token):
    return hmac.new(_refresh_secret().encode('utf-8'), raw_token.encode('utf-8'), hashlib.sha256).hexdigest()


def create_access_token(user, family_id=None):
    now = utc_now_naive()
    ttl = int(current_app.config.get('ACCESS_TOKEN_TTL_SECONDS', 900))
    payload = {
        'id': user.id,
        'email': user.email,
        'role': user.role_key,
        'permissions': user.permissions,
        'iat': now,
        'exp': now + timedelta(seconds=ttl),
    }
    if family_id:
        payload['fid'] = family_id
    return jwt.encode(payload, _jwt_secret(), algorithm=current_app.config.get('JWT_ALGORITHM', 'HS256'))


def decode_access_token(token):
    return jwt.decode(
        token,
        _jwt_secret(),
        algorithms=[current_app.config.get('JWT_ALGORITHM', 'HS256')],
        options={'require': ['exp', 'iat']},
    )


def issue_refresh_token(user, family_id=None):
    raw_token = secrets.token_hex(REFRESH_TOKEN_BYTES)
    ttl = int(current_app.config.get('REFRESH_TOKEN_TTL_SECONDS', 7 * 24 * 3600))
    record = RefreshToken(
        token_hash=hash_refresh_token(raw_token),
        family_id=family_id or secrets.token_hex(16),
        user_id=user.id,
        status=TOKEN_STATUS_ISSUED,
        expires_at=utc_now_naive() + timedelta(seconds=ttl),
        created_ip=get_request_ip(),
        user_agent=clean_text(request.headers.get('User-Agent', ''), 300),
    )
    db.session.add(record)
    db.session.flush()
    return raw_token, record


def issue_token_pair(user):
    raw_refresh, record = issue_refresh_token(user)
    return create_access_token(user, record.family_id), raw_refresh


def find_refresh_token(raw_token):
    if not raw_token:
        return None
    return RefreshToken.query.filter_by(token_hash=hash_refresh_token(raw_token)).first()


def revoke_family(family_id, now=None):
    now = now or utc_now_naive()
    revoked = 0
    for token in RefreshToken.query.filter_by(family_id=family_id, status=TOKEN_STATUS_ISSUED).all():
        token.transition(TOKEN_STATUS_REVOKED, now)
        revoked += 1
    return revoked


def revoke_user_tokens(user):
    now = utc_now_naive()
    revoked = 0
    for token in RefreshToken.query.filter_by(user_id=user.id, status=TOKEN_STATUS_ISSUED).all():
        token.transition(TOKEN_STATUS_REVOKED, now)
        revoked += 1
    return revoked


def rotate_refresh_token(raw_token):
    """Redeem a refresh token and mint a new pair in the same family.

    Commits the state change even when the redemption fails, so that an
    expiry or a reuse-triggered revocation is persisted.
    """
    invalid = AuthError('Invalid or expired refresh token')
    token = find_refresh_token(raw_token)
    if token is None:
        raise invalid

    now = utc_now_naive()
    if token.status == TOKEN_STATUS_REDEEMED:
        revoked = revoke_family(token.family_id, now)
        db.session.commit()
        current_app.logger.warning(
            f'Refresh token reuse detected for user {token.user_id}; revoked {revoked} token(s) in family {token.family_id}.'
        )
        raise invalid
    if token.status != TOKEN_STATUS_ISSUED:
        raise invalid
    if token.is_past_expiry(now):
        token.transition(TOKEN_STATUS_EXPIRED, now)
        db.session.commit()
        raise invalid

    user = token.user
    if user is None or not user.is_active:
        revoke_family(token.family_id, now)
        db.session.commit()
        raise invalid

    token.transition(TOKEN_STATUS_REDEEMED, now)
    new_raw, new_record = issue_refresh_token(user, family_id=token.family_id)
    token.replaced_by_id = new_record.id
    db.session.commit()
    return user, create_access_token(user, token.family_id), new_raw


def revoke_refresh_token(raw_token):
    token = find_refresh_token(raw_token)
    if token is None or token.status != TOKEN_STATUS_ISSUED:
        return False
    token.transition(TOKEN_STATUS_REVOKED)
    return True


def authenticate_user(email, password):
    normalized = clean_text(email, 255).lower()
    user = User.query.filter_by(email=normalized).first() if normalized else None
    if user is None:
        # Keep response timing closer for unknown emails.
        bcrypt.checkpw((password or '').encode('utf-8')[:72], AUTH_DUMMY_HASH.encode('utf-8'))
        raise AuthError('Invalid email or password')
    if not user.check_password(password or '') or not user.is_active:
        raise AuthError('Invalid email or password')
    user.last_login_at = utc_now_naive()
    return user


def _cookie_options():
    return {
        'httponly': True,
        'secure': bool(current_app.config.get('AUTH_COOKIE_SECURE')),
        'samesite': current_app.config.get('AUTH_COOKIE_SAMESITE', 'Lax'),
    }


def set_auth_cookies(response, access_token, refresh_token):
    options = _cookie_options()
    response.set_cookie(
        ACCESS_COOKIE_NAME,
        access_token,
        max_age=int(current_app.config.get('ACCESS_TOKEN_TTL_SECONDS', 900)),
        path='/',
        **options,
    )
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        refresh_token,
        max_age=int(current_app.config.get('REFRESH_TOKEN_TTL_SECONDS', 7 * 24 * 3600)),
        path=REFRESH_COOKIE_PATH,
        **options,
    )
    return response


def clear_auth_cookies(response):
    options = _cookie_options()
    response.delete_cookie(ACCESS_COOKIE_NAME, path='/', **options)
    response.delete_cookie(REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH, **options)
    return response


def get_request_access_token():
    header = (request.headers.get('Authorization') or '').strip()
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return request.cookies.get(ACCESS_COOKIE_NAME) or ''


@login_manager.request_loader
def load_user_from_request(req):
    token = get_request_access_token()
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        g.auth_error = 'Token expired'
        return None
    except jwt.InvalidTokenError:
        g.auth_error = 'Invalid token'
        return None

    try:
        user_id = int(payload.get('id'))
    except (TypeError, ValueError):
        g.auth_error = 'Invalid token'
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        g.auth_error = 'Invalid or expired token'
        return None
    g.token_family_id = payload.get('fid')
    return user


@login_manager.unauthorized_handler
def handle_unauthorized():
    return error_response(getattr(g, 'auth_error', None) or 'Authentication required', 401)


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if current_user.role_key not in ADMIN_ROLES:
            return error_response('Insufficient permissions', 403)
        return view(*args, **kwargs)

    return wrapped


def permission_required(*permissions):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return login_manager.unauthorized()
            if not all(current_user.has_permission(p) for p in permissions):
                return error_response('Insufficient permissions', 403)
            return view(*args, **kwargs)

        return wrapped

    return decorator
