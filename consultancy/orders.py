"""Order creation, admin updates and payment state changes."""
import secrets
import time
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

import stripe
from flask import current_app
from sqlalchemy import func, or_

from . import notifications, payments
from .errors import ApiError, FieldErrors
from .integrations import suitedash
from .integrations.errors import SuiteDashError
from .models import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_PENDING,
    ORDER_STATUSES,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_UNPAID,
    PAYMENT_STATUSES,
    Order,
    OrderItem,
    Service,
    db,
    normalize_order_status,
    normalize_payment_status,
    utc_now_naive,
)
from .utils import PENNY, clean_text, escape_like, is_valid_email, parse_positive_int, to_base36

MAX_ORDER_LINES = 50
MAX_LINE_QUANTITY = 99


def generate_order_number():
    timestamp = to_base36(int(time.time() * 1000)).upper()
    return f'ORD-{timestamp}-{secrets.token_hex(2).upper()}'


def _vat_rate():
    return Decimal(str(current_app.config.get('VAT_RATE', 0.20)))


def calculate_tax(subtotal):
    return (Decimal(subtotal) * _vat_rate()).quantize(PENNY, rounding=ROUND_HALF_UP)


def _validate_order_payload(payload):
    errors = FieldErrors()
    name = clean_text(payload.get('customerName'), 200)
    email = clean_text(payload.get('customerEmail'), 255).lower()
    phone = clean_text(payload.get('customerPhone'), 50)
    notes = clean_text(payload.get('notes'), 2000)

    if not 2 <= len(name) <= 100:
        errors.add('customerName', 'Name must be between 2 and 100 characters.')
    if not is_valid_email(email):
        errors.add('customerEmail', 'A valid email address is required.')

    raw_items = payload.get('items')
    lines = {}
    if not isinstance(raw_items, list) or not raw_items:
        errors.add('items', 'At least one item is required.')
    elif len(raw_items) > MAX_ORDER_LINES:
        errors.add('items', f'An order can contain at most {MAX_ORDER_LINES} items.')
    else:
        for index, raw in enumerate(raw_items):
            raw = raw if isinstance(raw, dict) else {}
            service_id = parse_positive_int(raw.get('serviceId'))
            quantity = parse_positive_int(raw.get('quantity', 1))
            if service_id is None:
                errors.add(f'items.{index}.serviceId', 'Service id must be a positive integer.')
                continue
            if quantity is None:
                errors.add(f'items.{index}.quantity', 'Quantity must be at least 1.')
                continue
            # Repeated services are merged into one line.
            lines[service_id] = min(lines.get(service_id, 0) + quantity, MAX_LINE_QUANTITY)

    errors.raise_if_any()
    return {'name': name, 'email': email, 'phone': phone or None, 'notes': notes or None, 'lines': lines}


def create_order(payload, user=None):
    """Create an order, attach a checkout session and send the confirmation email.

    Returns the committed Order. Raises ValidationError for bad input and
    ApiError(400) when a service is missing or inactive.
    """
    data = _validate_order_payload(payload)
    service_ids = list(data['lines'])
    services = Service.query.filter(Service.id.in_(service_ids), Service.is_active.is_(True)).all()
    if len(services) != len(service_ids):
        raise ApiError('One or more services not found', 400)
    service_map = {service.id: service for service in services}

    order = Order(
        order_number=generate_order_number(),
        user_id=user.id if user is not None else None,
        customer_name=data['name'],
        customer_email=data['email'],
        customer_phone=data['phone'],
        notes=data['notes'],
        currency=(current_app.config.get('STRIPE_CURRENCY') or 'gbp').upper(),
        status=ORDER_STATUS_PENDING,
        payment_status=PAYMENT_STATUS_UNPAID,
    )
    subtotal = Decimal('0.00')
    for service_id in service_ids:
        service = service_map[service_id]
        quantity = data['lines'][service_id]
        unit_price = Decimal(service.price_from or 0).quantize(PENNY)
        line_total = (unit_price * quantity).quantize(PENNY)
        subtotal += line_total
        order.items.append(OrderItem(
            service_id=service.id,
            title=service.title,
            slug=service.slug,
            unit_price=unit_price,
            quantity=quantity,
            line_total=line_total,
        ))
    order.subtotal = subtotal
    order.tax = calculate_tax(subtotal)
    order.total = order.subtotal + order.tax
    db.session.add(order)
    db.session.flush()

    try:
        session = payments.create_checkout_session(order)
    except stripe.StripeError:
        db.session.rollback()
        raise
    order.stripe_session_id = session['id']
    order.payment_url = session['url']
    db.session.commit()
    current_app.logger.info(f'Order {order.order_number} created ({len(order.items)} item(s), total {order.total}).')

    notifications.send_order_confirmation(order)
    return order


def order_search_query(status=None, payment_status=None, search=None):
    query = Order.query
    if status:
        normalized = normalize_order_status(status)
        if normalized is None:
            raise ApiError('Invalid status filter', 422)
        query = query.filter(Order.status == normalized)
    if payment_status:
        normalized = normalize_payment_status(payment_status)
        if normalized is None:
            raise ApiError('Invalid payment status filter', 422)
        query = query.filter(Order.payment_status == normalized)
    if search:
        pattern = f'%{escape_like(search.lower())}%'
        query = query.filter(or_(
            func.lower(Order.order_number).like(pattern, escape='\\'),
            func.lower(Order.customer_name).like(pattern, escape='\\'),
            func.lower(Order.customer_email).like(pattern, escape='\\'),
        ))
    return query.order_by(Order.created_at.desc(), Order.id.desc())


def _sum_total(query):
    value = query.with_entities(func.coalesce(func.sum(Order.total), 0)).scalar()
    return float(Decimal(str(value or 0)).quantize(PENNY))


def order_stats():
    now = utc_now_naive()
    counts = dict(
        db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    )
    payment_counts = dict(
        db.session.query(Order.payment_status, func.count(Order.id)).group_by(Order.payment_status).all()
    )
    return {
        'total': sum(counts.values()),
        'pending': counts.get(ORDER_STATUS_PENDING, 0),
        'confirmed': counts.get(ORDER_STATUS_CONFIRMED, 0),
        'in_progress': counts.get(ORDER_STATUS_IN_PROGRESS, 0),
        'completed': counts.get(ORDER_STATUS_COMPLETED, 0),
        'cancelled': counts.get(ORDER_STATUS_CANCELLED, 0),
        'paid': payment_counts.get(PAYMENT_STATUS_PAID, 0),
        'unpaid': payment_counts.get(PAYMENT_STATUS_UNPAID, 0),
        'this_week': Order.query.filter(Order.created_at >= now - timedelta(days=7)).count(),
        'this_month': Order.query.filter(Order.created_at >= now - timedelta(days=30)).count(),
        'total_revenue': _sum_total(Order.query.filter(Order.payment_status == PAYMENT_STATUS_PAID)),
        'pending_revenue': _sum_total(Order.query.filter(Order.payment_status == PAYMENT_STATUS_UNPAID)),
    }


def apply_status_update(order, payload):
    """Set status and/or payment status directly; emails the customer when status changes."""
    errors = FieldErrors()
    new_status = None
    new_payment_status = None
    if payload.get('status') is not None:
        new_status = normalize_order_status(payload.get('status'))
        if new_status is None:
            errors.add('status', f"Status must be one of: {', '.join(ORDER_STATUSES)}.")
    payment_value = payload.get('paymentStatus', payload.get('payment_status'))
    if payment_value is not None:
        new_payment_status = normalize_payment_status(payment_value)
        if new_payment_status is None:
            errors.add('paymentStatus', f"Payment status must be one of: {', '.join(PAYMENT_STATUSES)}.")
    if new_status is None and new_payment_status is None and not errors:
        errors.add('status', 'Provide status or paymentStatus.')
    errors.raise_if_any()

    status_changed = new_status is not None and new_status != order.status
    if new_status is not None:
        order.status = new_status
    if new_payment_status is not None:
        order.payment_status = new_payment_status
        if new_payment_status == PAYMENT_STATUS_PAID and order.paid_at is None:
            order.paid_at = utc_now_naive()
    db.session.commit()

    if status_changed:
        notifications.send_order_status_update(order)
    return status_changed


def mark_order_paid(order, session_id=None):
    if order.payment_status == PAYMENT_STATUS_PAID:
        return False
    order.payment_status = PAYMENT_STATUS_PAID
    order.status = ORDER_STATUS_CONFIRMED
    order.paid_at = utc_now_naive()
    if session_id:
        order.stripe_session_id = session_id
    db.session.commit()
    current_app.logger.info(f'Order {order.order_number} marked as paid.')
    notifications.send_order_confirmation(order)
    return True


def mark_order_refunded(order):
    if order.payment_status == PAYMENT_STATUS_REFUNDED:
        return False
    order.payment_status = PAYMENT_STATUS_REFUNDED
    db.session.commit()
    current_app.logger.info(f'Order {order.order_number} marked as refunded.')
    return True


def delete_order(order, sync_suitedash=False):
    """Delete an order, optionally removing its SuiteDash contact first."""
    result = {'deleted': True, 'suitedash_deleted': None, 'suitedash_error': None}
    if sync_suitedash and order.suitedash_contact_id:
        try:
            result['suitedash_deleted'] = suitedash.delete_contact(order.suitedash_contact_id, related=order)
        except SuiteDashError as error:
            current_app.logger.warning(f'SuiteDash contact removal failed for {order.order_number}: {error.code}')
            result['suitedash_deleted'] = False
            result['suitedash_error'] = error.to_dict()
    db.session.delete(order)
    db.session.commit()
    return result


def bulk_delete_orders(ids, sync_suitedash=False):
    deleted = 0
    failed = 0
    for raw_id in ids or []:
        order_id = parse_positive_int(raw_id)
        order = db.session.get(Order, order_id) if order_id else None
        if order is None:
            failed += 1
            continue
        delete_order(order, sync_suitedash=sync_suitedash)
        deleted += 1
    return {'deleted': deleted, 'failed': failed}
