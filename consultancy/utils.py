"""Shared utility functions used across route and service modules."""
import ipaddress
import json
import re
import string
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import bleach
from flask import request

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SLUG_RE = re.compile(r"^[a-z0-9-]+$")
HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
PENNY = Decimal('0.01')
BASE36_ALPHABET = string.digits + string.ascii_lowercase

ALLOWED_RICH_TEXT_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 'blockquote',
    'ul', 'ol', 'li', 'h2', 'h3', 'h4', 'a', 'span',
]
ALLOWED_RICH_TEXT_ATTRIBUTES = {
    '*': ['class'],
    'a': ['href', 'title', 'target', 'rel'],
}
ALLOWED_RICH_TEXT_PROTOCOLS = ['http', 'https', 'mailto', 'tel']


def utc_now_naive():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_text(value, max_length=255):
    if value is None:
        return ''
    return str(value).strip()[:max_length]


def escape_like(value):
    """Escape SQL LIKE wildcard characters."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def is_valid_email(value):
    return bool(EMAIL_RE.match(value or ''))


def is_valid_slug(value):
    return bool(SLUG_RE.match(value or ''))


def is_hex_color(value):
    return bool(HEX_COLOR_RE.match(value or ''))


def is_strong_password(value, min_length=8):
    password = value or ''
    return (
        len(password) >= min_length
        and any(c.isupper() for c in password)
        and any(c.islower() for c in password)
        and any(c.isdigit() for c in password)
    )


def normalized_ip(value):
    candidate = (value or '').split(',', 1)[0].strip()
    if not candidate:
        return ''
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return ''


def get_request_ip():
    # request.remote_addr is proxy-aware when ProxyFix is enabled by app config.
    remote_ip = normalized_ip(request.remote_addr)
    return remote_ip or 'unknown'


def parse_int(value, default=0, min_value=None, max_value=None):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if min_value is not None and parsed < min_value:
        return min_value
    if max_value is not None and parsed > max_value:
        return max_value
    return parsed


def parse_positive_int(value):
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed <= 0:
        return None
    return parsed


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {'1', 'true', 'yes', 'on'}


def parse_decimal(value):
    if value is None or isinstance(value, bool) or value == '':
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed.quantize(PENNY, rounding=ROUND_HALF_UP)


def to_pence(amount):
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_gbp(amount):
    return f"£{Decimal(str(amount or 0)).quantize(PENNY, rounding=ROUND_HALF_UP):,.2f}"


def to_base36(number):
    number = int(number)
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return ''.join(reversed(digits))


def sanitize_html(value, max_length=100000):
    html = '' if value is None else str(value).strip()
    cleaned = bleach.clean(
        html,
        tags=ALLOWED_RICH_TEXT_TAGS,
        attributes=ALLOWED_RICH_TEXT_ATTRIBUTES,
        protocols=ALLOWED_RICH_TEXT_PROTOCOLS,
        strip=True,
    )
    return cleaned[:max_length]


def mask_secret(value, visible=4):
    raw = str(value or '')
    if not raw:
        return ''
    if len(raw) <= visible:
        return '*' * len(raw)
    return '*' * (len(raw) - visible) + raw[-visible:]


def is_masked(value):
    return isinstance(value, str) and value.startswith('*')


def mask_phone(value):
    digits = re.sub(r'\D', '', str(value or ''))
    if len(digits) <= 4:
        return '*' * len(digits)
    return '*' * (len(digits) - 4) + digits[-4:]


def safe_json_dumps(value, max_length=20000):
    try:
        text = json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = json.dumps(str(value))
    return text[:max_length]


def json_body():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def split_full_name(name):
    parts = clean_text(name, 200).split(' ', 1)
    first = parts[0] if parts else ''
    last = parts[1].strip() if len(parts) > 1 else ''
    return first, last
