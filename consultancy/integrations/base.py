"""Outbound HTTP plumbing shared by the SuiteDash and RingCentral clients.

Every call is recorded as an IntegrationLog row that moves from pending to
success or failed, with the duration, HTTP status and a masked copy of the
request payload.
"""
import json
import socket
import time
import urllib.error
from urllib.request import Request, urlopen

from flask import g, has_request_context

from ..models import (
    LOG_STATUS_FAILED,
    LOG_STATUS_PENDING,
    LOG_STATUS_SUCCESS,
    IntegrationLog,
    IntegrationSetting,
    db,
)
from ..utils import mask_phone, mask_secret, safe_json_dumps
from .errors import ERROR_INVALID_RESPONSE, ERROR_NETWORK, error_code_for_status

SENSITIVE_KEY_PARTS = ('password', 'secret', 'token', 'api_key', 'apikey', 'assertion', 'authorization')
PHONE_KEYS = {'phone', 'phoneNumber', 'phone_number', 'to', 'from'}
MAX_ERROR_BODY = 500


def get_integration_setting(provider):
    setting = IntegrationSetting.query.filter_by(provider=provider).first()
    if setting is None:
        setting = IntegrationSetting(provider=provider)
        db.session.add(setting)
        db.session.flush()
    return setting


def mask_payload(value):
    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            lowered = str(key).lower()
            if any(part in lowered for part in SENSITIVE_KEY_PARTS):
                masked[key] = mask_secret(item)
            elif key in PHONE_KEYS and isinstance(item, (str, int)):
                masked[key] = mask_phone(item)
            else:
                masked[key] = mask_payload(item)
        return masked
    if isinstance(value, list):
        return [mask_payload(item) for item in value]
    return value


def start_log(provider, action, payload=None, related=None):
    log = IntegrationLog(
        provider=provider,
        action=action,
        status=LOG_STATUS_PENDING,
        payload=safe_json_dumps(mask_payload(payload or {})),
        request_id=getattr(g, 'request_id', None) if has_request_context() else None,
    )
    if related is not None:
        log.related_type = type(related).__name__.lower()
        log.related_id = related.id
    db.session.add(log)
    db.session.flush()
    return log


def mark_success(log, response, http_status, duration_ms):
    log.status = LOG_STATUS_SUCCESS
    log.response = safe_json_dumps(mask_payload(response if response is not None else {}))
    log.http_status = http_status
    log.duration_ms = duration_ms


def mark_failed(log, error, duration_ms, response=None):
    log.status = LOG_STATUS_FAILED
    log.error_code = error.code
    log.error_message = (error.message or '')[:1000]
    log.http_status = error.http_status
    log.duration_ms = duration_ms
    if response is not None:
        log.response = safe_json_dumps(response)


def _retry_after(headers):
    raw = headers.get('Retry-After') if headers is not None else None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _decode_body(raw):
    text = (raw or b'').decode('utf-8', errors='replace').strip()
    if not text:
        return {}
    return json.loads(text)


def send_request(
    error_class,
    log,
    method,
    url,
    headers=None,
    payload=None,
    data=None,
    timeout=30,
):
    """Perform one HTTP call and return the decoded JSON body.

    Failures raise ``error_class`` with a structured code; the log row is
    updated either way and committed by the caller.
    """
    body = data
    request_headers = {'Accept': 'application/json'}
    request_headers.update(headers or {})
    if payload is not None and body is None:
        body = json.dumps(payload).encode('utf-8')
        request_headers['Content-Type'] = 'application/json'

    req = Request(url, data=body, method=method)
    for key, value in request_headers.items():
        req.add_header(key, value)

    started = time.monotonic()
    try:
        with urlopen(req, timeout=timeout) as resp:  # nosec B310
            http_status = getattr(resp, 'status', None) or resp.getcode()
            raw = resp.read()
    except urllib.error.HTTPError as exc:
        duration_ms = int((time.monotonic() - started) * 1000)
        error_body = exc.read().decode('utf-8', errors='replace')[:MAX_ERROR_BODY]
        error = error_class(
            error_code_for_status(exc.code),
            f'HTTP {exc.code}: {error_body or exc.reason}',
            http_status=exc.code,
            retry_after=_retry_after(exc.headers),
        )
        mark_failed(log, error, duration_ms, response={'body': error_body})
        raise error from exc
    except (urllib.error.URLError, socket.timeout, OSError) as exc:
        duration_ms = int((time.monotonic() - started) * 1000)
        reason = getattr(exc, 'reason', None) or exc
        error = error_class(ERROR_NETWORK, f'Network error: {reason}')
        mark_failed(log, error, duration_ms)
        raise error from exc

    duration_ms = int((time.monotonic() - started) * 1000)
    try:
        decoded = _decode_body(raw)
    except ValueError as exc:
        error = error_class(ERROR_INVALID_RESPONSE, 'Provider returned a non-JSON response.', http_status=http_status)
        mark_failed(log, error, duration_ms)
        raise error from exc
    if not isinstance(decoded, dict):
        error = error_class(ERROR_INVALID_RESPONSE, 'Provider returned an unexpected response shape.', http_status=http_status)
        mark_failed(log, error, duration_ms, response={'body': mask_payload(decoded)})
        raise error
    mark_success(log, decoded, http_status, duration_ms)
    return decoded


def recent_logs(provider, limit=50, status=None):
    query = IntegrationLog.query.filter_by(provider=provider)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(IntegrationLog.created_at.desc(), IntegrationLog.id.desc()).limit(limit).all()


def log_stats(provider):
    base = IntegrationLog.query.filter_by(provider=provider)
    total = base.count()
    succeeded = base.filter_by(status=LOG_STATUS_SUCCESS).count()
    failed = base.filter_by(status=LOG_STATUS_FAILED).count()
    last = base.order_by(IntegrationLog.created_at.desc(), IntegrationLog.id.desc()).first()
    return {
        'total_requests': total,
        'successful_requests': succeeded,
        'failed_requests': failed,
        'success_rate': round(succeeded / total * 100, 1) if total else 0.0,
        'last_activity_at': last.created_at.isoformat() if last and last.created_at else None,
    }

