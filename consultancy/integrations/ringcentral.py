"""RingCentral telephony client: JWT-bearer auth, ring-out calls, SMS and call log."""
import base64
import re
from datetime import timedelta
from urllib.parse import urlencode

from flask import current_app

from ..models import LOG_STATUS_SUCCESS, PROVIDER_RINGCENTRAL, IntegrationLog, db, utc_now_naive
from ..utils import clean_text, mask_phone
from .base import get_integration_setting, log_stats, send_request, start_log
from .errors import (
    ERROR_AUTH_FAILED,
    ERROR_DISABLED,
    ERROR_INVALID_RESPONSE,
    ERROR_NOT_CONFIGURED,
    RingCentralError,
)

JWT_BEARER_GRANT = 'urn:ietf:params:oauth:grant-type:jwt-bearer'
TOKEN_PATH = '/restapi/oauth/token'
API_PREFIX = '/restapi/v1.0'
PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")
MAX_SMS_LENGTH = 1000
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def normalize_phone(value):
    cleaned = re.sub(r"[\s().-]", '', str(value or ''))
    return cleaned if PHONE_RE.match(cleaned) else None


class RingCentralClient:
    def __init__(self, setting=None):
        self.setting = setting or get_integration_setting(PROVIDER_RINGCENTRAL)
        credentials = self.setting.credentials
        config = current_app.config
        self.server_url = (credentials.get('server_url') or config.get('RINGCENTRAL_SERVER_URL') or '').rstrip('/')
        self.client_id = credentials.get('client_id') or config.get('RINGCENTRAL_CLIENT_ID') or ''
        self.client_secret = credentials.get('client_secret') or config.get('RINGCENTRAL_CLIENT_SECRET') or ''
        self.jwt_token = credentials.get('jwt_token') or config.get('RINGCENTRAL_JWT_TOKEN') or ''
        self.timeout = int(config.get('RINGCENTRAL_TIMEOUT_SECONDS') or 30)
        self._access_token = None
        self._access_token_expires_at = None

    @property
    def is_configured(self):
        return bool(self.server_url and self.client_id and self.client_secret and self.jwt_token)

    @property
    def default_from_number(self):
        return self.setting.settings.get('default_from_number') or ''

    def ensure_ready(self):
        if not self.setting.is_enabled:
            raise RingCentralError(ERROR_DISABLED, 'RingCentral integration is not enabled')
        if not self.is_configured:
            raise RingCentralError(ERROR_NOT_CONFIGURED, 'RingCentral API is not configured')

    def _finish(self, log, method, url, **kwargs):
        try:
            return send_request(RingCentralError, log, method, url, timeout=self.timeout, **kwargs)
        finally:
            db.session.commit()

    def authenticate(self):
        now = utc_now_naive()
        if self._access_token and self._access_token_expires_at and self._access_token_expires_at > now:
            return self._access_token

        basic = base64.b64encode(f'{self.client_id}:{self.client_secret}'.encode('utf-8')).decode('ascii')
        form = urlencode({'grant_type': JWT_BEARER_GRANT, 'assertion': self.jwt_token}).encode('utf-8')
        log = start_log(PROVIDER_RINGCENTRAL, 'authenticate', {'grant_type': JWT_BEARER_GRANT})
        response = self._finish(
            log,
            'POST',
            f'{self.server_url}{TOKEN_PATH}',
            headers={
                'Authorization': f'Basic {basic}',
                'Content-Type': 'application/x-www-form-urlencoded',
            },
            data=form,
        )
        token = response.get('access_token')
        if not token:
            raise RingCentralError(ERROR_AUTH_FAILED, 'RingCentral did not return an access token')
        expires_in = int(response.get('expires_in') or 3600)
        self._access_token = token
        self._access_token_expires_at = now + timedelta(seconds=max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS))
        return token

    def _api(self, action, method, path, payload=None, query=None):
        token = self.authenticate()
        url = f'{self.server_url}{API_PREFIX}{path}'
        if query:
            url = f'{url}?{urlencode(query)}'
        log = start_log(PROVIDER_RINGCENTRAL, action, payload or query)
        return self._finish(log, method, url, headers={'Authorization': f'Bearer {token}'}, payload=payload)

    def account_info(self):
        return self._api('account_info', 'GET', '/account/~')

    def ring_out(self, from_number, to_number):
        return self._api('ring_out', 'POST', '/account/~/extension/~/ring-out', {
            'from': {'phoneNumber': from_number},
            'to': {'phoneNumber': to_number},
            'playPrompt': False,
        })

    def send_sms(self, from_number, to_number, text):
        return self._api('send_sms', 'POST', '/account/~/extension/~/sms', {
            'from': {'phoneNumber': from_number},
            'to': [{'phoneNumber': to_number}],
            'text': text,
        })

    def call_log(self, per_page=100, date_from=None):
        query = {'perPage': per_page, 'view': 'Simple'}
        if date_from:
            query['dateFrom'] = date_from
        return self._api('call_log', 'GET', '/account/~/extension/~/call-log', query=query)


def check_connection():
    client = RingCentralClient()
    if not client.is_configured:
        client.setting.record_test_result(False, 'RingCentral API is not configured')
        db.session.commit()
        return {'success': False, 'message': 'RingCentral API is not configured', 'code': ERROR_NOT_CONFIGURED}
    try:
        account = client.account_info()
    except RingCentralError as error:
        client.setting.record_test_result(False, f'Connection failed: {error.message}')
        db.session.commit()
        return {'success': False, 'message': f'Connection failed: {error.message}', 'code': error.code}
    client.setting.record_test_result(True, 'Connection successful')
    db.session.commit()
    return {
        'success': True,
        'message': 'Connection successful',
        'account': {
            'id': account.get('id'),
            'main_number': mask_phone(account.get('mainNumber')),
            'status': account.get('status'),
        },
    }


def _resolve_numbers(client, to_number, from_number):
    to_clean = normalize_phone(to_number)
    from_clean = normalize_phone(from_number or client.default_from_number)
    errors = {}
    if not to_clean:
        errors['to'] = ['A valid destination phone number is required.']
    if not from_clean:
        errors['from'] = ['A valid caller phone number is required (or configure default_from_number).']
    return to_clean, from_clean, errors


def place_call(to_number, from_number=None):
    """Start a ring-out call; returns (result, field_errors)."""
    client = RingCentralClient()
    client.ensure_ready()
    to_clean, from_clean, errors = _resolve_numbers(client, to_number, from_number)
    if errors:
        return None, errors
    response = client.ring_out(from_clean, to_clean)
    current_app.logger.info(f'RingCentral call started to {mask_phone(to_clean)}.')
    status = response.get('status') if isinstance(response.get('status'), dict) else {}
    return {'id': response.get('id'), 'call_status': status.get('callStatus')}, None


def send_text(to_number, text, from_number=None):
    """Send one SMS; returns (result, field_errors)."""
    client = RingCentralClient()
    client.ensure_ready()
    to_clean, from_clean, errors = _resolve_numbers(client, to_number, from_number)
    message = clean_text(text, max_length=MAX_SMS_LENGTH + 1)
    if not message:
        errors['message'] = ['Message text is required.']
    elif len(message) > MAX_SMS_LENGTH:
        errors['message'] = [f'Message must be at most {MAX_SMS_LENGTH} characters.']
    if errors:
        return None, errors
    response = client.send_sms(from_clean, to_clean, message)
    if 'id' not in response:
        raise RingCentralError(ERROR_INVALID_RESPONSE, 'RingCentral did not return a message id')
    current_app.logger.info(f'RingCentral SMS sent to {mask_phone(to_clean)}.')
    return {'id': response.get('id'), 'message_status': response.get('messageStatus')}, None


def recent_calls(per_page=100):
    client = RingCentralClient()
    client.ensure_ready()
    response = client.call_log(per_page=per_page)
    records = response.get('records') if isinstance(response.get('records'), list) else []
    return [
        {
            'id': record.get('id'),
            'direction': record.get('direction'),
            'result': record.get('result'),
            'duration': record.get('duration'),
            'start_time': record.get('startTime'),
            'from': mask_phone((record.get('from') or {}).get('phoneNumber')),
            'to': mask_phone((record.get('to') or {}).get('phoneNumber')),
        }
        for record in records
    ]


def stats():
    setting = get_integration_setting(PROVIDER_RINGCENTRAL)
    base = IntegrationLog.query.filter_by(provider=PROVIDER_RINGCENTRAL, status=LOG_STATUS_SUCCESS)
    return {
        'enabled': bool(setting.is_enabled),
        'connection_status': setting.connection_status,
        'last_tested_at': setting.last_tested_at.isoformat() if setting.last_tested_at else None,
        'calls_placed': base.filter_by(action='ring_out').count(),
        'sms_sent': base.filter_by(action='send_sms').count(),
        **log_stats(PROVIDER_RINGCENTRAL),
    }
