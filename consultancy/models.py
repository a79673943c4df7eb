from decimal import Decimal
import json

import bcrypt
from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy

from .integrations.errors import ERROR_RATE_LIMITED, RETRYABLE_ERROR_CODES
from .utils import utc_now_naive

db = SQLAlchemy()

ROLE_SUPER_ADMIN = 'super_admin'
ROLE_ADMIN = 'admin'
ROLE_CUSTOMER = 'customer'
USER_ROLE_CHOICES = (
    ROLE_SUPER_ADMIN,
    ROLE_ADMIN,
    ROLE_CUSTOMER,
)
USER_ROLE_LABELS = {
    ROLE_SUPER_ADMIN: 'Super Admin',
    ROLE_ADMIN: 'Admin',
    ROLE_CUSTOMER: 'Customer',
}
ADMIN_ROLES = {ROLE_SUPER_ADMIN, ROLE_ADMIN}
ROLE_PERMISSIONS = {
    ROLE_SUPER_ADMIN: {
        'dashboard:view',
        'content:manage',
        'theme:manage',
        'catalog:manage',
        'orders:manage',
        'contacts:manage',
        'users:manage',
        'settings:manage',
        'integrations:manage',
    },
    ROLE_ADMIN: {
        'dashboard:view',
        'content:manage',
        'theme:manage',
        'catalog:manage',
        'orders:manage',
        'contacts:manage',
        'users:manage',
        'settings:manage',
    },
    ROLE_CUSTOMER: {
        'orders:view_own',
        'profile:manage',
    },
}
ALL_PERMISSIONS = frozenset().union(*ROLE_PERMISSIONS.values())

SERVICE_TYPE_ONE_OFF = 'one_off'
SERVICE_TYPE_SUBSCRIPTION = 'subscription'
SERVICE_TYPES = (SERVICE_TYPE_ONE_OFF, SERVICE_TYPE_SUBSCRIPTION)
SERVICE_TYPE_LABELS = {
    SERVICE_TYPE_ONE_OFF: 'One-off',
    SERVICE_TYPE_SUBSCRIPTION: 'Subscription',
}

ORDER_STATUS_PENDING = 'pending'
ORDER_STATUS_CONFIRMED = 'confirmed'
ORDER_STATUS_IN_PROGRESS = 'in_progress'
ORDER_STATUS_COMPLETED = 'completed'
ORDER_STATUS_CANCELLED = 'cancelled'
ORDER_STATUSES = (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_CANCELLED,
)
ORDER_STATUS_LABELS = {
    ORDER_STATUS_PENDING: 'Pending',
    ORDER_STATUS_CONFIRMED: 'Confirmed',
    ORDER_STATUS_IN_PROGRESS: 'In Progress',
    ORDER_STATUS_COMPLETED: 'Completed',
    ORDER_STATUS_CANCELLED: 'Cancelled',
}

PAYMENT_STATUS_UNPAID = 'unpaid'
PAYMENT_STATUS_PAID = 'paid'
PAYMENT_STATUS_REFUNDED = 'refunded'
PAYMENT_STATUS_FAILED = 'failed'
PAYMENT_STATUSES = (
    PAYMENT_STATUS_UNPAID,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_FAILED,
)
PAYMENT_STATUS_LABELS = {
    PAYMENT_STATUS_UNPAID: 'Unpaid',
    PAYMENT_STATUS_PAID: 'Paid',
    PAYMENT_STATUS_REFUNDED: 'Refunded',
    PAYMENT_STATUS_FAILED: 'Failed',
}

CONTACT_STATUS_NEW = 'new'
CONTACT_STATUS_IN_PROGRESS = 'in_progress'
CONTACT_STATUS_RESOLVED = 'resolved'
CONTACT_STATUS_ARCHIVED = 'archived'
CONTACT_STATUSES = (
    CONTACT_STATUS_NEW,
    CONTACT_STATUS_IN_PROGRESS,
    CONTACT_STATUS_RESOLVED,
    CONTACT_STATUS_ARCHIVED,
)
CONTACT_STATUS_LABELS = {
    CONTACT_STATUS_NEW: 'New',
    CONTACT_STATUS_IN_PROGRESS: 'In Progress',
    CONTACT_STATUS_RESOLVED: 'Resolved',
    CONTACT_STATUS_ARCHIVED: 'Archived',
}

TOKEN_STATUS_ISSUED = 'issued'
TOKEN_STATUS_REDEEMED = 'redeemed'
TOKEN_STATUS_EXPIRED = 'expired'
TOKEN_STATUS_REVOKED = 'revoked'
TOKEN_STATUSES = (
    TOKEN_STATUS_ISSUED,
    TOKEN_STATUS_REDEEMED,
    TOKEN_STATUS_EXPIRED,
    TOKEN_STATUS_REVOKED,
)
# Every non-issued state is terminal.
TOKEN_TRANSITIONS = {
    TOKEN_STATUS_ISSUED: {TOKEN_STATUS_REDEEMED, TOKEN_STATUS_EXPIRED, TOKEN_STATUS_REVOKED},
    TOKEN_STATUS_REDEEMED: set(),
    TOKEN_STATUS_EXPIRED: set(),
    TOKEN_STATUS_REVOKED: set(),
}

PROVIDER_SUITEDASH = 'suitedash'
PROVIDER_RINGCENTRAL = 'ringcentral'
PROVIDER_SENDGRID = 'sendgrid'
PROVIDER_STRIPE = 'stripe'
INTEGRATION_PROVIDERS = (PROVIDER_SUITEDASH, PROVIDER_RINGCENTRAL)
WEBHOOK_PROVIDERS = (PROVIDER_SUITEDASH, PROVIDER_SENDGRID, PROVIDER_RINGCENTRAL)
INTEGRATION_MODE_API = 'api'
INTEGRATION_MODE_IMPORT = 'import'
INTEGRATION_MODES = (INTEGRATION_MODE_API, INTEGRATION_MODE_IMPORT)

LOG_STATUS_PENDING = 'pending'
LOG_STATUS_SUCCESS = 'success'
LOG_STATUS_FAILED = 'failed'


def isoformat(value):
    return value.isoformat() if value else None


def money(value):
    if value is None:
        return 0.0
    return float(value)


def _normalize_choice(value, choices, default):
    candidate = str(value or '').strip().lower().replace('-', '_')
    if candidate in choices:
        return candidate
    return default


def normalize_user_role(value, default=ROLE_CUSTOMER):
    return _normalize_choice(value, USER_ROLE_CHOICES, default)


def normalize_service_type(value, default=None):
    return _normalize_choice(value, SERVICE_TYPES, default)


def normalize_order_status(value, default=None):
    return _normalize_choice(value, ORDER_STATUSES, default)


def normalize_payment_status(value, default=None):
    return _normalize_choice(value, PAYMENT_STATUSES, default)


def normalize_contact_status(value, default=None):
    return _normalize_choice(value, CONTACT_STATUSES, default)


def _json_loads(raw, fallback):
    if raw is None:
        return fallback
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return fallback
    return value if isinstance(value, type(fallback)) else fallback


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(30), nullable=False, default=ROLE_CUSTOMER, index=True)
    permissions_json = db.Column(db.Text, nullable=False, default='[]')
    phone = db.Column(db.String(50))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime)
    suitedash_contact_id = db.Column(db.String(120))
    suitedash_synced_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    def set_password(self, password):
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_password(self, password):
        try:
            return bcrypt.checkpw((password or '').encode('utf-8'), self.password_hash.encode('utf-8'))
        except ValueError:
            return False

    @property
    def role_key(self):
        return normalize_user_role(self.role)

    @property
    def role_label(self):
        return USER_ROLE_LABELS[self.role_key]

    @property
    def is_admin(self):
        return self.role_key in ADMIN_ROLES

    @property
    def extra_permissions(self):
        return [str(p) for p in _json_loads(self.permissions_json, [])]

    @extra_permissions.setter
    def extra_permissions(self, values):
        self.permissions_json = json.dumps(sorted({str(v) for v in (values or []) if str(v).strip()}))

    @property
    def permissions(self):
        return sorted(ROLE_PERMISSIONS[self.role_key] | set(self.extra_permissions))

    def has_permission(self, permission):
        if self.role_key == ROLE_SUPER_ADMIN:
            return True
        return permission in self.permissions

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role_key,
            'role_label': self.role_label,
            'permissions': self.permissions,
            'is_active': bool(self.is_active),
            'status': 'active' if self.is_active else 'inactive',
            'last_login_at': isoformat(self.last_login_at),
            'suitedash_contact_id': self.suitedash_contact_id,
            'suitedash_synced_at': isoformat(self.suitedash_synced_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class RefreshToken(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    family_id = db.Column(db.String(32), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=TOKEN_STATUS_ISSUED, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    redeemed_at = db.Column(db.DateTime)
    revoked_at = db.Column(db.DateTime)
    replaced_by_id = db.Column(db.Integer, db.ForeignKey('refresh_token.id'))
    created_ip = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=utc_now_naive)

    user = db.relationship('User', backref=db.backref('refresh_tokens', lazy='dynamic', cascade='all, delete-orphan'))

    def can_transition(self, new_status):
        return new_status in TOKEN_TRANSITIONS.get(self.status, set())

    def transition(self, new_status, now=None):
        if not self.can_transition(new_status):
            raise ValueError(f'Refresh token cannot move from {self.status} to {new_status}.')
        now = now or utc_now_naive()
        self.status = new_status
        if new_status == TOKEN_STATUS_REDEEMED:
            self.redeemed_at = now
        elif new_status == TOKEN_STATUS_REVOKED:
            self.revoked_at = now

    def is_past_expiry(self, now=None):
        return self.expires_at <= (now or utc_now_naive())


class Pillar(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(140), unique=True, nullable=False, index=True)
    tagline = db.Column(db.String(255))
    description = db.Column(db.Text)
    hero_image = db.Column(db.String(500))
    card_image = db.Column(db.String(500))
    icon = db.Column(db.String(80))
    meta_title = db.Column(db.String(255))
    meta_description = db.Column(db.String(500))
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    services = db.relationship('Service', backref='pillar', lazy='dynamic')
    faqs = db.relationship('Faq', backref='pillar', lazy='dynamic')

    def active_services_count(self):
        return self.services.filter_by(is_active=True).count()

    def to_dict(self, services_count=None):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'tagline': self.tagline,
            'description': self.description,
            'hero_image': self.hero_image,
            'card_image': self.card_image,
            'icon': self.icon,
            'meta_title': self.meta_title,
            'meta_description': self.meta_description,
            'sort_order': self.sort_order,
            'is_active': bool(self.is_active),
            'services_count': self.active_services_count() if services_count is None else services_count,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class Service(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    pillar_id = db.Column(db.Integer, db.ForeignKey('pillar.id'), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False, default=SERVICE_TYPE_ONE_OFF)
    title = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(220), unique=True, nullable=False, index=True)
    summary = db.Column(db.Text)
    details = db.Column(db.Text)
    icon = db.Column(db.String(80))
    price_from = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    price_label = db.Column(db.String(80))
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @property
    def is_purchasable(self):
        return self.type == SERVICE_TYPE_ONE_OFF

    @property
    def cta(self):
        if self.is_purchasable:
            return {'action': 'add_to_cart', 'label': 'Add to Cart'}
        return {'action': 'contact', 'label': 'Contact Us', 'link': '/contact'}

    def to_dict(self, include_pillar=True):
        return {
            'id': self.id,
            'pillar_id': self.pillar_id,
            'type': self.type,
            'type_label': SERVICE_TYPE_LABELS.get(self.type, 'One-off'),
            'title': self.title,
            'slug': self.slug,
            'summary': self.summary,
            'details': self.details,
            'icon': self.icon,
            'price_from': money(self.price_from),
            'price_label': self.price_label,
            'sort_order': self.sort_order,
            'is_featured': bool(self.is_featured),
            'is_active': bool(self.is_active),
            'cta': self.cta,
            'pillar': self.pillar.to_dict() if include_pillar and self.pillar else None,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }

    def to_cart_item(self):
        return {
            'id': self.id,
            'title': self.title,
            'slug': self.slug,
            'price_from': money(self.price_from),
            'price_label': self.price_label,
            'pillar_name': self.pillar.name if self.pillar else '',
            'pillar_slug': self.pillar.slug if self.pillar else '',
        }


class Faq(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    pillar_id = db.Column(db.Integer, db.ForeignKey('pillar.id'), nullable=True, index=True)
    question = db.Column(db.String(500), nullable=False)
    answer = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(80))
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utc_now_naive)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @property
    def is_global(self):
        return self.pillar_id is None

    def to_dict(self, include_pillar=True):
        return {
            'id': self.id,
            'pillar_id': self.pillar_id,
            'question': self.question,
            'answer': self.answer,
            'category': self.category,
            'sort_order': self.sort_order,
            'is_active': bool(self.is_active),
            'is_global': self.is_global,
            'pillar': self.pillar.to_dict() if include_pillar and self.pillar else None,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class ContactSubmission(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(50))
    subject = db.Column(db.String(300))
    message = db.Column(db.Text, nullable=False)
    pillar_id = db.Column(db.Integer, db.ForeignKey('pillar.id'), nullable=True)
    source = db.Column(db.String(40), nullable=False, default='contact_form')
    status = db.Column(db.String(20), nullable=False, default=CONTACT_STATUS_NEW, index=True)
    ip_address = db.Column(db.String(64))
    suitedash_contact_id = db.Column(db.String(120))
    suitedash_synced_at = db.Column(db.DateTime)
    suitedash_sync_error = db.Column(db.String(500))
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)

    pillar = db.relationship('Pillar')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'subject': self.subject,
            'message': self.message,
            'pillar_id': self.pillar_id,
            'pillar_name': self.pillar.name if self.pillar else None,
            'source': self.source,
            'status': self.status,
            'status_label': CONTACT_STATUS_LABELS.get(self.status, self.status),
            'suitedash_contact_id': self.suitedash_contact_id,
            'suitedash_synced': bool(self.suitedash_contact_id),
            'suitedash_synced_at': isoformat(self.suitedash_synced_at),
            'suitedash_sync_error': self.suitedash_sync_error,
            'created_at': isoformat(self.created_at),
        }


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True, index=True)
    customer_name = db.Column(db.String(100), nullable=False)
    customer_email = db.Column(db.String(255), nullable=False, index=True)
    customer_phone = db.Column(db.String(50))
    notes = db.Column(db.Text)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    total = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    currency = db.Column(db.String(3), nullable=False, default='GBP')
    status = db.Column(db.String(20), nullable=False, default=ORDER_STATUS_PENDING, index=True)
    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_STATUS_UNPAID, index=True)
    stripe_session_id = db.Column(db.String(255), index=True)
    payment_url = db.Column(db.String(1000))
    paid_at = db.Column(db.DateTime)
    suitedash_synced = db.Column(db.Boolean, nullable=False, default=False)
    suitedash_contact_id = db.Column(db.String(120))
    suitedash_invoice_id = db.Column(db.String(120))
    suitedash_sync_error = db.Column(db.String(500))
    suitedash_sync_error_code = db.Column(db.String(40))
    suitedash_synced_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    items = db.relationship('OrderItem', backref='order', cascade='all, delete-orphan', order_by='OrderItem.id')
    user = db.relationship('User', backref=db.backref('orders', lazy='dynamic'))

    @property
    def customer_first_name(self):
        return (self.customer_name or '').split(' ', 1)[0]

    @property
    def customer_last_name(self):
        parts = (self.customer_name or '').split(' ', 1)
        return parts[1] if len(parts) > 1 else ''

    def to_dict(self):
        return {
            'id': self.id,
            'order_number': self.order_number,
            'user_id': self.user_id,
            'customer': {
                'firstName': self.customer_first_name,
                'lastName': self.customer_last_name,
                'name': self.customer_name,
                'email': self.customer_email,
                'phone': self.customer_phone,
            },
            'notes': self.notes,
            'items': [item.to_dict() for item in self.items],
            'subtotal': money(self.subtotal),
            'tax': money(self.tax),
            'total': money(self.total),
            'currency': self.currency,
            'status': self.status,
            'status_label': ORDER_STATUS_LABELS.get(self.status, self.status),
            'payment_status': self.payment_status,
            'payment_status_label': PAYMENT_STATUS_LABELS.get(self.payment_status, self.payment_status),
            'payment_url': self.payment_url,
            'stripe_session_id': self.stripe_session_id,
            'paid_at': isoformat(self.paid_at),
            'suitedash_synced': bool(self.suitedash_synced),
            'suitedash_contact_id': self.suitedash_contact_id,
            'suitedash_invoice_id': self.suitedash_invoice_id,
            'suitedash_sync_error': self.suitedash_sync_error,
            'suitedash_sync_error_code': self.suitedash_sync_error_code,
            'suitedash_sync_rate_limited': self.suitedash_sync_error_code == ERROR_RATE_LIMITED,
            'suitedash_sync_retryable': self.suitedash_sync_error_code in RETRYABLE_ERROR_CODES,
            'suitedash_synced_at': isoformat(self.suitedash_synced_at),
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('order.id', ondelete='CASCADE'), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey('service.id', ondelete='SET NULL'), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(220))
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    line_total = db.Column(db.Numeric(10, 2), nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'service_id': self.service_id,
            'title': self.title,
            'slug': self.slug,
            'unit_price': money(self.unit_price),
            'quantity': self.quantity,
            'line_total': money(self.line_total),
        }


class SiteSetting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)


class Media(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    filename = db.Column(db.String(300), nullable=False)
    file_path = db.Column(db.String(500), nullable=False, unique=True)
    file_size = db.Column(db.Integer)
    mime_type = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=utc_now_naive)


class IntegrationSetting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(40), unique=True, nullable=False)
    is_enabled = db.Column(db.Boolean, nullable=False, default=False)
    mode = db.Column(db.String(20), nullable=False, default=INTEGRATION_MODE_API)
    credentials_json = db.Column(db.Text, nullable=False, default='{}')
    settings_json = db.Column(db.Text, nullable=False, default='{}')
    connection_status = db.Column(db.String(20), nullable=False, default='unknown')
    last_tested_at = db.Column(db.DateTime)
    last_test_success = db.Column(db.Boolean)
    last_test_message = db.Column(db.String(500))
    last_sync_at = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    @property
    def credentials(self):
        return _json_loads(self.credentials_json, {})

    @credentials.setter
    def credentials(self, value):
        self.credentials_json = json.dumps(value or {})

    @property
    def settings(self):
        return _json_loads(self.settings_json, {})

    @settings.setter
    def settings(self, value):
        self.settings_json = json.dumps(value or {})

    def record_test_result(self, success, message):
        self.last_tested_at = utc_now_naive()
        self.last_test_success = bool(success)
        self.last_test_message = (message or '')[:500]
        self.connection_status = 'connected' if success else 'error'


class IntegrationLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(40), nullable=False, index=True)
    action = db.Column(db.String(80), nullable=False)
    request_id = db.Column(db.String(80))
    status = db.Column(db.String(20), nullable=False, default=LOG_STATUS_PENDING, index=True)
    payload = db.Column(db.Text)
    response = db.Column(db.Text)
    error_code = db.Column(db.String(40))
    error_message = db.Column(db.String(1000))
    http_status = db.Column(db.Integer)
    duration_ms = db.Column(db.Integer)
    related_type = db.Column(db.String(40))
    related_id = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=utc_now_naive, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'provider': self.provider,
            'action': self.action,
            'request_id': self.request_id,
            'status': self.status,
            'payload': _json_loads(self.payload, {}),
            'response': _json_loads(self.response, {}),
            'error_code': self.error_code,
            'error_message': self.error_message,
            'http_status': self.http_status,
            'duration_ms': self.duration_ms,
            'related_type': self.related_type,
            'related_id': self.related_id,
            'created_at': isoformat(self.created_at),
        }


class AuthRateLimitBucket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(80), nullable=False, index=True)
    ip = db.Column(db.String(64), nullable=False, index=True)
    count = db.Column(db.Integer, nullable=False, default=0)
    reset_at = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    __table_args__ = (
        db.UniqueConstraint('scope', 'ip', name='uq_auth_rate_limit_scope_ip'),
        db.Index('ix_auth_rate_limit_scope_reset_at', 'scope', 'reset_at'),
    )
