from datetime import timedelta
import hashlib

import jwt
from flask import Blueprint, current_app, g, request
from flask_login import current_user, login_required

from ..auth import (
    REFRESH_COOKIE_NAME,
    AuthError,
    authenticate_user,
    clear_auth_cookies,
    issue_token_pair,
    revoke_family,
    revoke_refresh_token,
    revoke_user_tokens,
    rotate_refresh_token,
    set_auth_cookies,
)
from ..errors import ApiError, FieldErrors
from ..models import ROLE_CUSTOMER, User, db, utc_now_naive
from ..notifications import send_password_reset, send_welcome_email
from ..rate_limit import enforce_login_limit
from ..responses import error_response, success
from ..utils import clean_text, is_strong_password, is_valid_email, json_body

auth_bp = Blueprint('auth', __name__)
PASSWORD_RULE = 'Password must be at least 8 characters and include upper and lower case letters and a number.'
RESET_TOKEN_PURPOSE = 'password_reset'
RESET_TOKEN_TTL_SECONDS = 3600


def _validate_name(name, errors):
    if not 2 <= len(name) <= 100:
        errors.add('name', 'Name must be between 2 and 100 characters.')


def _email_taken(email, exclude_id=None):
    query = User.query.filter(User.email == email)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def _session_response(user, message, status=200):
    access_token, refresh_token = issue_token_pair(user)
    db.session.commit()
    response, status = success({'user': user.to_dict(), 'accessToken': access_token}, message, status=status)
    set_auth_cookies(response, access_token, refresh_token)
    return response, status


@auth_bp.route('/login', methods=['POST'])
def login():
    limited = enforce_login_limit()
    if limited is not None:
        return limited
    payload = json_body()
    email = clean_text(payload.get('email'), 255).lower()
    password = payload.get('password') or ''
    errors = FieldErrors()
    if not is_valid_email(email):
        errors.add('email', 'A valid email address is required.')
    if not password:
        errors.add('password', 'Password is required.')
    errors.raise_if_any()

    try:
        user = authenticate_user(email, password)
    except AuthError:
        current_app.logger.warning('Failed login attempt.')
        raise
    current_app.logger.info(f'User {user.id} logged in.')
    return _session_response(user, 'Login successful')


@auth_bp.route('/register', methods=['POST'])
def register():
    payload = json_body()
    name = clean_text(payload.get('name'), 200)
    email = clean_text(payload.get('email'), 255).lower()
    password = payload.get('password') or ''
    phone = clean_text(payload.get('phone'), 50)

    errors = FieldErrors()
    _validate_name(name, errors)
    if not is_valid_email(email):
        errors.add('email', 'A valid email address is required.')
    if not is_strong_password(password):
        errors.add('password', PASSWORD_RULE)
    errors.raise_if_any()
    if _email_taken(email):
        raise ApiError('Email already registered', 409)

    user = User(name=name, email=email, phone=phone or None, role=ROLE_CUSTOMER, is_active=True)
    user.set_password(password)
    user.last_login_at = utc_now_naive()
    db.session.add(user)
    db.session.flush()
    response = _session_response(user, 'Registration successful', status=201)
    send_welcome_email(user)
    return response


@auth_bp.route('/refresh', methods=['POST'])
def refresh():
    raw_token = request.cookies.get(REFRESH_COOKIE_NAME) or clean_text(json_body().get('refreshToken'), 256)
    if not raw_token:
        return error_response('Refresh token required', 401)
    try:
        user, access_token, new_refresh = rotate_refresh_token(raw_token)
    except AuthError as error:
        response, status = error_response(error.message, 401)
        clear_auth_cookies(response)
        return response, status
    response, status = success({'user': user.to_dict(), 'accessToken': access_token}, 'Token refreshed')
    set_auth_cookies(response, access_token, new_refresh)
    return response, status


@auth_bp.route('/logout', methods=['POST'])
def logout():
    raw_token = request.cookies.get(REFRESH_COOKIE_NAME) or clean_text(json_body().get('refreshToken'), 256)
    if raw_token:
        revoke_refresh_token(raw_token)
    # The refresh cookie is path-scoped, so the access token's family id covers cookie-only clients.
    if current_user.is_authenticated and getattr(g, 'token_family_id', None):
        revoke_family(g.token_family_id)
    db.session.commit()
    response, status = success(None, 'Logged out successfully')
    clear_auth_cookies(response)
    return response, status


@auth_bp.route('/user', methods=['GET'])
@login_required
def get_user():
    return success(current_user.to_dict())


@auth_bp.route('/profile', methods=['PATCH'])
@login_required
def update_profile():
    payload = json_body()
    user = current_user
    errors = FieldErrors()

    if 'name' in payload:
        name = clean_text(payload.get('name'), 200)
        _validate_name(name, errors)
        user.name = name
    if 'email' in payload:
        email = clean_text(payload.get('email'), 255).lower()
        if not is_valid_email(email):
            errors.add('email', 'A valid email address is required.')
        elif email != user.email and _email_taken(email, exclude_id=user.id):
            db.session.rollback()
            raise ApiError('Email already in use', 409)
        user.email = email
    if 'phone' in payload:
        user.phone = clean_text(payload.get('phone'), 50) or None

    new_password = payload.get('password') or payload.get('newPassword') or ''
    if new_password:
        if not user.check_password(payload.get('currentPassword') or ''):
            errors.add('currentPassword', 'Current password is incorrect.')
        elif not is_strong_password(new_password):
            errors.add('password', PASSWORD_RULE)
    if errors:
        db.session.rollback()
        errors.raise_if_any()

    if new_password:
        user.set_password(new_password)
        revoked = revoke_user_tokens(user)
        current_app.logger.info(f'User {user.id} changed password; revoked {revoked} refresh token(s).')
        return _session_response(user, 'Profile updated')

    db.session.commit()
    return success(user.to_dict(), 'Profile updated')


def _password_fingerprint(user):
    return hashlib.sha256(user.password_hash.encode('utf-8')).hexdigest()[:16]


def create_password_reset_token(user):
    now = utc_now_naive()
    payload = {
        'sub': str(user.id),
        'purpose': RESET_TOKEN_PURPOSE,
        'ph': _password_fingerprint(user),
        'iat': now,
        'exp': now + timedelta(seconds=RESET_TOKEN_TTL_SECONDS),
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm=current_app.config.get('JWT_ALGORITHM', 'HS256'))


def _user_for_reset_token(token):
    try:
        payload = jwt.decode(
            token,
            current_app.config['JWT_SECRET'],
            algorithms=[current_app.config.get('JWT_ALGORITHM', 'HS256')],
            options={'require': ['exp', 'sub']},
        )
    except jwt.InvalidTokenError:
        return None
    if payload.get('purpose') != RESET_TOKEN_PURPOSE:
        return None
    try:
        user = db.session.get(User, int(payload['sub']))
    except (TypeError, ValueError):
        return None
    # Changing the password changes the fingerprint, so a link works once.
    if user is None or not user.is_active or payload.get('ph') != _password_fingerprint(user):
        return None
    return user


@auth_bp.route('/forgot-password', methods=['POST'])
def forgot_password():
    limited = enforce_login_limit()
    if limited is not None:
        return limited
    email = clean_text(json_body().get('email'), 255).lower()
    if not is_valid_email(email):
        errors = FieldErrors()
        errors.add('email', 'A valid email address is required.')
        errors.raise_if_any()
    user = User.query.filter_by(email=email, is_active=True).first()
    if user is not None:
        frontend = (current_app.config.get('FRONTEND_URL') or '').rstrip('/')
        send_password_reset(user, f'{frontend}/reset-password?token={create_password_reset_token(user)}')
    return success(None, 'If an account exists for that email, a reset link has been sent')


@auth_bp.route('/reset-password', methods=['POST'])
def reset_password():
    payload = json_body()
    password = payload.get('password') or ''
    user = _user_for_reset_token(clean_text(payload.get('token'), 2000))
    if user is None:
        raise ApiError('Invalid or expired reset token', 400)
    if not is_strong_password(password):
        errors = FieldErrors()
        errors.add('password', PASSWORD_RULE)
        errors.raise_if_any()
    user.set_password(password)
    revoke_user_tokens(user)
    db.session.commit()
    current_app.logger.info(f'User {user.id} reset their password.')
    return success(None, 'Password has been reset')
