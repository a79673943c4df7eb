"""SuiteDash CRM client and the sync services built on it.

Failures always surface as ``SuiteDashError`` with a structured ``code`` so
callers can tell a rate limit from a bad credential without parsing text.
"""
import csv
import io

from flask import current_app

from ..models import (
    INTEGRATION_MODE_API,
    INTEGRATION_MODE_IMPORT,
    PROVIDER_SUITEDASH,
    ContactSubmission,
    Order,
    User,
    db,
    utc_now_naive,
)
from ..utils import split_full_name
from .base import get_integration_setting, log_stats, send_request, start_log
from .errors import (
    ERROR_DISABLED,
    ERROR_INVALID_RESPONSE,
    ERROR_NOT_CONFIGURED,
    ERROR_NOT_FOUND,
    ERROR_RATE_LIMITED,
    SuiteDashError,
)

SYNC_TYPE_ORDERS = 'orders'
SYNC_TYPE_CONTACTS = 'contacts'
SYNC_TYPE_USERS = 'users'
SYNC_TYPES = (SYNC_TYPE_ORDERS, SYNC_TYPE_CONTACTS, SYNC_TYPE_USERS)
CSV_EXPORT_COLUMNS = ('First Name', 'Last Name', 'Email', 'Phone', 'Company', 'Tags', 'Notes', 'Source', 'Created At')


def _external_id(response, *keys):
    candidates = [response]
    if isinstance(response.get('data'), dict):
        candidates.append(response['data'])
    for candidate in candidates:
        for key in keys:
            value = candidate.get(key)
            if value not in (None, ''):
                return str(value)
    return None


class SuiteDashClient:
    def __init__(self, setting=None):
        self.setting = setting or get_integration_setting(PROVIDER_SUITEDASH)
        credentials = self.setting.credentials
        config = current_app.config
        self.base_url = (credentials.get('api_url') or config.get('SUITEDASH_API_BASE_URL') or '').rstrip('/')
        self.public_id = credentials.get('public_id') or config.get('SUITEDASH_PUBLIC_ID') or ''
        self.secret_key = credentials.get('secret_key') or config.get('SUITEDASH_SECRET_KEY') or ''
        self.timeout = int(config.get('SUITEDASH_TIMEOUT_SECONDS') or 30)

    @property
    def is_enabled(self):
        return bool(self.setting.is_enabled)

    @property
    def is_api_mode(self):
        return (self.setting.mode or INTEGRATION_MODE_API) == INTEGRATION_MODE_API

    @property
    def is_configured(self):
        return bool(self.base_url and self.public_id and self.secret_key)

    def ensure_ready(self):
        if not self.is_enabled:
            raise SuiteDashError(ERROR_DISABLED, 'SuiteDash integration is not enabled')
        if not self.is_configured:
            raise SuiteDashError(ERROR_NOT_CONFIGURED, 'SuiteDash API is not configured')

    def _request(self, action, method, path, payload=None, related=None):
        log = start_log(PROVIDER_SUITEDASH, action, payload, related)
        try:
            return send_request(
                SuiteDashError,
                log,
                method,
                f'{self.base_url}{path}',
                headers={'X-API-KEY': self.public_id, 'X-SECRET-KEY': self.secret_key},
                payload=payload,
                timeout=self.timeout,
            )
        finally:
            db.session.commit()

    def ping(self):
        return self._request('test_connection', 'GET', '/ping')

    def create_contact(self, data, related=None):
        payload = {
            'first_name': data.get('first_name') or '',
            'last_name': data.get('last_name') or '',
            'email': data.get('email') or '',
            'phone': data.get('phone') or '',
            'notes': data.get('notes') or '',
            'tags': data.get('tags') or [],
            'custom_fields': data.get('custom_fields') or {},
        }
        response = self._request('create_or_update_contact', 'POST', '/contacts', payload, related)
        contact_id = _external_id(response, 'id', 'contact_id', 'uid')
        if not contact_id:
            raise SuiteDashError(ERROR_INVALID_RESPONSE, 'SuiteDash did not return a contact id')
        return contact_id

    def create_lead(self, data, related=None):
        payload = {
            'contact_id': data.get('contact_id'),
            'source': data.get('source') or 'website',
            'status': data.get('status') or 'new',
            'pillar': data.get('pillar'),
            'message': data.get('message') or '',
            'metadata': data.get('metadata') or {},
        }
        response = self._request('create_lead', 'POST', '/leads', payload, related)
        return _external_id(response, 'id', 'lead_id')

    def attach_tags(self, contact_id, tags, related=None):
        return self._request('attach_tags', 'POST', f'/contacts/{contact_id}/tags', {'tags': list(tags)}, related)

    def create_invoice(self, data, related=None):
        response = self._request('create_invoice', 'POST', '/invoices', data, related)
        return _external_id(response, 'id', 'invoice_id')

    def delete_contact(self, contact_id, related=None):
        return self._request('delete_contact', 'DELETE', f'/contacts/{contact_id}', None, related)


def check_connection():
    client = SuiteDashClient()
    if not client.is_configured:
        client.setting.record_test_result(False, 'SuiteDash API is not configured')
        db.session.commit()
        return {'success': False, 'message': 'SuiteDash API is not configured', 'code': ERROR_NOT_CONFIGURED}
    try:
        client.ping()
    except SuiteDashError as error:
        client.setting.record_test_result(False, f'Connection failed: {error.message}')
        db.session.commit()
        return {'success': False, 'message': f'Connection failed: {error.message}', 'code': error.code}
    client.setting.record_test_result(True, 'Connection successful')
    db.session.commit()
    return {'success': True, 'message': 'Connection successful'}


def _submission_tags(submission):
    tags = ['website-lead', f'source-{submission.source or "contact_form"}']
    if submission.pillar:
        tags.append(f'pillar-{submission.pillar.slug}')
    return tags


def sync_contact_submission(submission):
    """Push a contact submission as contact + lead; import mode defers to CSV export."""
    client = SuiteDashClient()
    if not client.is_enabled:
        raise SuiteDashError(ERROR_DISABLED, 'SuiteDash integration is not enabled')
    if not client.is_api_mode:
        return {'success': True, 'mode': INTEGRATION_MODE_IMPORT, 'message': 'Import mode - contact will be included in next CSV export'}
    client.ensure_ready()

    first_name, last_name = split_full_name(submission.name)
    contact_id = submission.suitedash_contact_id
    try:
        if not contact_id:
            contact_id = client.create_contact({
                'first_name': first_name,
                'last_name': last_name,
                'email': submission.email,
                'phone': submission.phone,
                'notes': submission.message,
                'tags': _submission_tags(submission),
                'custom_fields': {
                    'source': submission.source,
                    'pillar': submission.pillar.name if submission.pillar else None,
                    'submitted_at': submission.created_at.isoformat() if submission.created_at else None,
                },
            }, related=submission)
            # Keep the contact even if the lead or tags fail, so a resync reuses it.
            submission.suitedash_contact_id = contact_id
            db.session.commit()
        client.create_lead({
            'contact_id': contact_id,
            'source': submission.source,
            'pillar': submission.pillar.slug if submission.pillar else None,
            'message': submission.message,
            'metadata': {'subject': submission.subject},
        }, related=submission)
        client.attach_tags(contact_id, _submission_tags(submission), related=submission)
    except SuiteDashError as error:
        submission.suitedash_sync_error = error.message[:500]
        db.session.commit()
        raise

    submission.suitedash_contact_id = contact_id
    submission.suitedash_synced_at = utc_now_naive()
    submission.suitedash_sync_error = None
    db.session.commit()
    return {'success': True, 'mode': INTEGRATION_MODE_API, 'contact_id': contact_id}


def _record_order_failure(order, error):
    order.suitedash_synced = False
    order.suitedash_sync_error = error.message[:500]
    order.suitedash_sync_error_code = error.code
    db.session.commit()


def sync_order(order):
    client = SuiteDashClient()
    try:
        client.ensure_ready()
        contact_id = order.suitedash_contact_id
        if not contact_id:
            contact_id = client.create_contact({
                'first_name': order.customer_first_name,
                'last_name': order.customer_last_name,
                'email': order.customer_email,
                'phone': order.customer_phone,
                'notes': order.notes,
                'tags': ['customer', 'website-order'],
                'custom_fields': {'order_number': order.order_number},
            }, related=order)
            order.suitedash_contact_id = contact_id
            db.session.commit()
        invoice_id = client.create_invoice({
            'contact_id': contact_id,
            'reference': order.order_number,
            'currency': order.currency,
            'status': order.payment_status,
            'line_items': [
                {
                    'description': item.title,
                    'quantity': item.quantity,
                    'unit_price': str(item.unit_price),
                }
                for item in order.items
            ],
            'subtotal': str(order.subtotal),
            'tax': str(order.tax),
            'total': str(order.total),
        }, related=order)
    except SuiteDashError as error:
        _record_order_failure(order, error)
        raise

    order.suitedash_synced = True
    order.suitedash_contact_id = contact_id
    order.suitedash_invoice_id = invoice_id
    order.suitedash_synced_at = utc_now_naive()
    order.suitedash_sync_error = None
    order.suitedash_sync_error_code = None
    db.session.commit()
    return {'success': True, 'contact_id': contact_id, 'invoice_id': invoice_id}


def sync_user(user):
    client = SuiteDashClient()
    client.ensure_ready()
    first_name, last_name = split_full_name(user.name)
    contact_id = client.create_contact({
        'first_name': first_name,
        'last_name': last_name,
        'email': user.email,
        'phone': user.phone,
        'tags': ['registered-user', f'role-{user.role_key}'],
    }, related=user)
    user.suitedash_contact_id = contact_id
    user.suitedash_synced_at = utc_now_naive()
    db.session.commit()
    return {'success': True, 'contact_id': contact_id}


def delete_contact(contact_id, related=None):
    """Remove a contact; a contact that is already gone counts as deleted."""
    if not contact_id:
        return False
    client = SuiteDashClient()
    client.ensure_ready()
    try:
        client.delete_contact(contact_id, related=related)
    except SuiteDashError as error:
        if error.code == ERROR_NOT_FOUND:
            return True
        raise
    return True


def _sync_batch(records, sync_one):
    result = {'synced': 0, 'failed': 0, 'total': len(records), 'rate_limited': False, 'skipped': 0, 'errors': []}
    for index, record in enumerate(records):
        try:
            sync_one(record)
        except SuiteDashError as error:
            result['failed'] += 1
            result['errors'].append({'id': record.id, **error.to_dict()})
            if error.is_rate_limited:
                result['rate_limited'] = True
                result['skipped'] = len(records) - index - 1
                current_app.logger.warning(
                    f"SuiteDash rate limit hit; skipped {result['skipped']} remaining record(s)."
                )
                break
            if error.code in (ERROR_DISABLED, ERROR_NOT_CONFIGURED):
                result['skipped'] = len(records) - index - 1
                break
        else:
            result['synced'] += 1
    return result


def sync_all_orders():
    orders = Order.query.filter_by(suitedash_synced=False).order_by(Order.created_at.asc(), Order.id.asc()).all()
    return _sync_batch(orders, sync_order)


def sync_pending(sync_type):
    if sync_type == SYNC_TYPE_ORDERS:
        result = sync_all_orders()
    elif sync_type == SYNC_TYPE_CONTACTS:
        submissions = (
            ContactSubmission.query.filter(ContactSubmission.suitedash_contact_id.is_(None))
            .order_by(ContactSubmission.created_at.asc(), ContactSubmission.id.asc())
            .all()
        )
        result = _sync_batch(submissions, sync_contact_submission)
    elif sync_type == SYNC_TYPE_USERS:
        users = User.query.filter(User.suitedash_contact_id.is_(None)).order_by(User.id.asc()).all()
        result = _sync_batch(users, sync_user)
    else:
        raise ValueError(f'Unknown sync type: {sync_type}')

    setting = get_integration_setting(PROVIDER_SUITEDASH)
    setting.last_sync_at = utc_now_naive()
    db.session.commit()
    return result


def export_contacts_csv():
    """CSV of contact submissions not yet pushed to SuiteDash, in its import column layout."""
    submissions = (
        ContactSubmission.query.filter(ContactSubmission.suitedash_contact_id.is_(None))
        .order_by(ContactSubmission.created_at.asc(), ContactSubmission.id.asc())
        .all()
    )
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_EXPORT_COLUMNS)
    for submission in submissions:
        first_name, last_name = split_full_name(submission.name)
        writer.writerow([
            first_name,
            last_name,
            submission.email,
            submission.phone or '',
            '',
            ';'.join(_submission_tags(submission)),
            submission.message,
            submission.source,
            submission.created_at.isoformat() if submission.created_at else '',
        ])
    return buffer.getvalue(), len(submissions)


def stats():
    setting = get_integration_setting(PROVIDER_SUITEDASH)
    return {
        'enabled': bool(setting.is_enabled),
        'mode': setting.mode,
        'connection_status': setting.connection_status,
        'last_sync_at': setting.last_sync_at.isoformat() if setting.last_sync_at else None,
        'contacts_synced': ContactSubmission.query.filter(ContactSubmission.suitedash_contact_id.isnot(None)).count(),
        'contacts_pending': ContactSubmission.query.filter(ContactSubmission.suitedash_contact_id.is_(None)).count(),
        'orders_synced': Order.query.filter_by(suitedash_synced=True).count(),
        'orders_pending': Order.query.filter_by(suitedash_synced=False).count(),
        'orders_rate_limited': Order.query.filter_by(suitedash_sync_error_code=ERROR_RATE_LIMITED).count(),
        'users_synced': User.query.filter(User.suitedash_contact_id.isnot(None)).count(),
        **log_stats(PROVIDER_SUITEDASH),
    }
