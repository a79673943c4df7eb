"""Python client for the consultancy API that keeps a login alive.

Both tokens travel as HttpOnly cookies, so the ``requests.Session`` cookie jar
carries them between calls. The client tracks the logged-in user and when the
next token refresh is due; callers refresh every ``REFRESH_INTERVAL``, well
inside the refresh token's seven day lifetime.
"""
import contextlib
import contextvars
import logging
import time

import requests

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = 6 * 24 * 3600
DEFAULT_TIMEOUT = 15

_current_session = contextvars.ContextVar('consultancy_auth_session', default=None)


class AuthError(Exception):
    def __init__(self, message, status_code=None, errors=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.errors = errors or {}


class AuthSession:
    def __init__(self, base_url, http=None, timeout=DEFAULT_TIMEOUT, clock=time.time):
        self.base_url = base_url.rstrip('/')
        self.http = http or requests.Session()
        self.timeout = timeout
        self.clock = clock
        self.user = None
        self.access_token = None
        self.last_refreshed_at = None
        self.is_loading = True

    @property
    def is_authenticated(self):
        return self.user is not None

    @property
    def is_admin(self):
        return bool(self.user) and self.user.get('role') in ('admin', 'super_admin')

    def has_permission(self, permission):
        if not self.user:
            return False
        return self.user.get('role') == 'super_admin' or permission in (self.user.get('permissions') or [])

    def _url(self, path):
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method, path, **kwargs):
        headers = dict(kwargs.pop('headers', None) or {})
        if self.access_token:
            headers.setdefault('Authorization', f'Bearer {self.access_token}')
        response = self.http.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return response, payload if isinstance(payload, dict) else {}

    def _clear(self):
        self.user = None
        self.access_token = None
        self.last_refreshed_at = None

    def _accept_session(self, payload):
        data = payload.get('data') or {}
        self.user = data.get('user') or self.user
        self.access_token = data.get('accessToken') or self.access_token
        self.last_refreshed_at = self.clock()

    def load(self):
        """Restore the user from existing cookies; failures leave the session logged out."""
        try:
            response, payload = self._send('GET', '/auth/user')
        except requests.RequestException as error:
            logger.warning(f'Session check failed: {error}')
            response, payload = None, {}
        if response is not None and response.ok and payload.get('success'):
            self.user = payload.get('data')
            self.last_refreshed_at = self.clock()
        else:
            self._clear()
        self.is_loading = False
        return self.user

    def login(self, email, password):
        try:
            response, payload = self._send('POST', '/auth/login', json={'email': email, 'password': password})
        except requests.RequestException as error:
            raise AuthError('Unable to reach the server') from error
        if not response.ok or not payload.get('success'):
            raise AuthError(payload.get('message') or 'Login failed', response.status_code, payload.get('errors'))
        self._accept_session(payload)
        self.is_loading = False
        return self.user

    def register(self, name, email, password, phone=None):
        body = {'name': name, 'email': email, 'password': password}
        if phone:
            body['phone'] = phone
        try:
            response, payload = self._send('POST', '/auth/register', json=body)
        except requests.RequestException as error:
            raise AuthError('Unable to reach the server') from error
        if not response.ok or not payload.get('success'):
            raise AuthError(payload.get('message') or 'Registration failed', response.status_code, payload.get('errors'))
        self._accept_session(payload)
        return self.user

    def logout(self):
        """Log out on the server when possible; local state is cleared regardless."""
        try:
            self._send('POST', '/auth/logout')
        except requests.RequestException as error:
            logger.warning(f'Logout request failed: {error}')
        finally:
            self._clear()
            self.http.cookies.clear()

    def refresh(self):
        try:
            response, payload = self._send('POST', '/auth/refresh')
        except requests.RequestException as error:
            logger.warning(f'Token refresh failed: {error}')
            self._clear()
            return False
        if not response.ok or not payload.get('success'):
            self._clear()
            return False
        self._accept_session(payload)
        return True

    def refresh_due(self, now=None):
        if not self.is_authenticated or self.last_refreshed_at is None:
            return False
        now = self.clock() if now is None else now
        return now - self.last_refreshed_at >= REFRESH_INTERVAL

    def request(self, method, path, **kwargs):
        """Authenticated call; refreshes when due and retries once after a 401."""
        if self.refresh_due():
            self.refresh()
        response, payload = self._send(method, path, **kwargs)
        if response.status_code == 401 and self.is_authenticated and self.refresh():
            response, payload = self._send(method, path, **kwargs)
        return response, payload


@contextlib.contextmanager
def use_session(session):
    token = _current_session.set(session)
    try:
        yield session
    finally:
        _current_session.reset(token)


def current_session():
    session = _current_session.get()
    if session is None:
        raise RuntimeError('current_session() must be called inside use_session()')
    return session
