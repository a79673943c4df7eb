import os

from flask import Blueprint, Response, current_app, request, send_from_directory, session
from flask_login import current_user, login_required
from sqlalchemy import or_

from .. import content
from ..cart import Cart
from ..errors import ApiError, FieldErrors, not_found
from ..integrations import suitedash
from ..integrations.errors import ERROR_DISABLED, SuiteDashError
from ..models import (
    SERVICE_TYPE_ONE_OFF,
    SERVICE_TYPE_SUBSCRIPTION,
    ContactSubmission,
    Faq,
    Order,
    Pillar,
    Service,
    db,
)
from ..notifications import send_contact_confirmation, send_contact_notification
from ..orders import create_order
from ..responses import success
from ..theme import render_theme_css, theme_css_vars
from ..uploads import safe_upload_path
from ..utils import clean_text, get_request_ip, is_valid_email, json_body, parse_bool, parse_int, parse_positive_int

public_bp = Blueprint('public', __name__)
PUBLIC_PAGES = content.PAGE_SECTIONS


def _active_pillar_or_404(slug):
    pillar = Pillar.query.filter_by(slug=slug, is_active=True).first()
    if pillar is None:
        raise not_found('Pillar not found')
    return pillar


def _active_services_query():
    return (
        Service.query.join(Pillar, Service.pillar_id == Pillar.id)
        .filter(Service.is_active.is_(True), Pillar.is_active.is_(True))
        .order_by(Service.sort_order.asc(), Service.id.asc())
    )


def _active_faqs_query():
    return Faq.query.filter(Faq.is_active.is_(True)).order_by(Faq.sort_order.asc(), Faq.id.asc())


def _order_created_response(order):
    return success(
        {
            'orderNumber': order.order_number,
            'total': float(order.total),
            'paymentUrl': order.payment_url,
        },
        'Order created successfully',
        status=201,
    )


def _request_user():
    return current_user if current_user.is_authenticated else None


# Pillars

@public_bp.route('/pillars')
def list_pillars():
    pillars = Pillar.query.filter_by(is_active=True).order_by(Pillar.sort_order.asc(), Pillar.id.asc()).all()
    return success([pillar.to_dict() for pillar in pillars])


@public_bp.route('/pillars/<slug>')
def get_pillar(slug):
    return success(_active_pillar_or_404(slug).to_dict())


@public_bp.route('/pillars/<slug>/services')
def pillar_services(slug):
    pillar = _active_pillar_or_404(slug)
    services = _active_services_query().filter(Service.pillar_id == pillar.id).all()
    return success({
        'pillar': pillar.to_dict(),
        'one_off': [s.to_dict(include_pillar=False) for s in services if s.type == SERVICE_TYPE_ONE_OFF],
        'subscription': [s.to_dict(include_pillar=False) for s in services if s.type == SERVICE_TYPE_SUBSCRIPTION],
    })


@public_bp.route('/pillars/<slug>/faqs')
def pillar_faqs(slug):
    pillar = _active_pillar_or_404(slug)
    return success({
        'pillar_faqs': [faq.to_dict(include_pillar=False) for faq in _active_faqs_query().filter(Faq.pillar_id == pillar.id)],
        'global_faqs': [faq.to_dict(include_pillar=False) for faq in _active_faqs_query().filter(Faq.pillar_id.is_(None))],
    })


# Services

@public_bp.route('/services')
def list_services():
    query = _active_services_query()
    if parse_bool(request.args.get('featured')):
        query = query.filter(Service.is_featured.is_(True))
    pillar_slug = clean_text(request.args.get('pillar'), 140)
    if pillar_slug:
        query = query.filter(Pillar.slug == pillar_slug)
    return success([service.to_dict() for service in query.all()])


@public_bp.route('/services/featured')
def featured_services():
    services = _active_services_query().filter(Service.is_featured.is_(True)).all()
    return success([service.to_dict() for service in services])


@public_bp.route('/services/<slug>')
def get_service(slug):
    service = _active_services_query().filter(Service.slug == slug).first()
    if service is None:
        raise not_found('Service not found')
    return success(service.to_dict())


# FAQs

@public_bp.route('/faqs')
def list_faqs():
    query = _active_faqs_query()
    pillar_slug = clean_text(request.args.get('pillar'), 140)
    if pillar_slug:
        pillar = _active_pillar_or_404(pillar_slug)
        query = query.filter(or_(Faq.pillar_id == pillar.id, Faq.pillar_id.is_(None)))
    return success([faq.to_dict() for faq in query.all()])


@public_bp.route('/faqs/global')
def global_faqs():
    return success([faq.to_dict(include_pillar=False) for faq in _active_faqs_query().filter(Faq.pillar_id.is_(None))])


# Contact

@public_bp.route('/contact', methods=['POST'])
def submit_contact():
    payload = json_body()
    name = clean_text(payload.get('name'), 200)
    email = clean_text(payload.get('email'), 255).lower()
    message = clean_text(payload.get('message'), 6000)
    phone = clean_text(payload.get('phone'), 50)
    subject = clean_text(payload.get('subject'), 300)
    pillar_id = payload.get('pillarId')

    errors = FieldErrors()
    if not name or len(name) > 100:
        errors.add('name', 'Name is required and must be at most 100 characters.')
    if not is_valid_email(email):
        errors.add('email', 'A valid email address is required.')
    if not 10 <= len(message) <= 5000:
        errors.add('message', 'Message must be between 10 and 5000 characters.')
    pillar = None
    if pillar_id not in (None, ''):
        parsed_pillar_id = parse_positive_int(pillar_id)
        pillar = db.session.get(Pillar, parsed_pillar_id) if parsed_pillar_id else None
        if pillar is None:
            errors.add('pillarId', 'Unknown pillar.')
    errors.raise_if_any()

    submission = ContactSubmission(
        name=name,
        email=email,
        phone=phone or None,
        subject=subject or None,
        message=message,
        pillar_id=pillar.id if pillar else None,
        ip_address=get_request_ip(),
    )
    db.session.add(submission)
    db.session.commit()

    send_contact_notification(submission)
    send_contact_confirmation(submission)
    try:
        suitedash.sync_contact_submission(submission)
    except SuiteDashError as error:
        if error.code != ERROR_DISABLED:
            current_app.logger.warning(f'SuiteDash sync failed for contact {submission.id}: {error.code}')
    return success({'id': submission.id}, 'Message sent successfully', status=201)


# Orders

@public_bp.route('/orders', methods=['POST'])
def place_order():
    order = create_order(json_body(), user=_request_user())
    return _order_created_response(order)


@public_bp.route('/orders/my-orders')
@login_required
def my_orders():
    orders = (
        Order.query.filter(or_(Order.user_id == current_user.id, Order.customer_email == current_user.email))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    return success([order.to_dict() for order in orders])


# Cart

def _cart():
    return Cart(session)


@public_bp.route('/cart')
def get_cart():
    return success(_cart().to_dict())


@public_bp.route('/cart/items', methods=['POST'])
def add_cart_item():
    payload = json_body()
    service_id = parse_positive_int(payload.get('service_id', payload.get('serviceId')))
    if service_id is None:
        errors = FieldErrors()
        errors.add('service_id', 'Service id must be a positive integer.')
        errors.raise_if_any()
    service = _active_services_query().filter(Service.id == service_id).first()
    if service is None:
        raise not_found('Service not found')
    if not service.is_purchasable:
        raise ApiError('Subscription services are arranged by consultation. Please contact us.', 422)

    cart = _cart()
    try:
        added = cart.add_item(service.to_cart_item())
    except ValueError as error:
        raise ApiError(str(error), 422) from error
    return success(cart.to_dict(), 'Item added to cart' if added else 'Item already in cart')


@public_bp.route('/cart/items/<int:service_id>', methods=['PATCH'])
def update_cart_item(service_id):
    quantity = parse_int(json_body().get('quantity'), default=None)
    if quantity is None:
        errors = FieldErrors()
        errors.add('quantity', 'Quantity must be an integer.')
        errors.raise_if_any()
    cart = _cart()
    if not cart.update_quantity(service_id, quantity):
        raise not_found('Item not in cart')
    return success(cart.to_dict(), 'Cart updated')


@public_bp.route('/cart/items/<int:service_id>', methods=['DELETE'])
def remove_cart_item(service_id):
    cart = _cart()
    if not cart.remove_item(service_id):
        raise not_found('Item not in cart')
    return success(cart.to_dict(), 'Item removed from cart')


@public_bp.route('/cart', methods=['DELETE'])
def clear_cart():
    cart = _cart()
    cart.clear()
    return success(cart.to_dict(), 'Cart cleared')


@public_bp.route('/cart/checkout', methods=['POST'])
def checkout_cart():
    cart = _cart()
    if cart.is_empty:
        raise ApiError('Cart is empty', 400)
    payload = dict(json_body())
    payload['items'] = cart.order_lines()
    order = create_order(payload, user=_request_user())
    cart.clear()
    return _order_created_response(order)


# Content

@public_bp.route('/content/settings')
def content_settings():
    return success(content.public_settings())


@public_bp.route('/content/header')
def content_header():
    return success(content.public_header())


@public_bp.route('/content/footer')
def content_footer():
    return success(content.public_footer())


@public_bp.route('/content/pages/<page>')
def content_page(page):
    if page not in PUBLIC_PAGES:
        raise not_found('Page not found')
    return success(content.public_page(page))


@public_bp.route('/content/theme')
def content_theme():
    theme = content.get_theme()
    return success({'theme': theme, 'css_vars': theme_css_vars(theme)})


@public_bp.route('/content/theme.css')
def content_theme_css():
    response = Response(render_theme_css(content.get_theme()), mimetype='text/css')
    response.headers['Cache-Control'] = 'public, max-age=300'
    return response


@public_bp.route('/website-settings')
def website_settings():
    return success(content.get_website_settings())


@public_bp.route('/uploads/<filename>')
def uploaded_file(filename):
    safe_filename, full_path = safe_upload_path(filename)
    if not safe_filename:
        raise not_found('File not found')
    if not os.path.exists(full_path):
        raise not_found('File not found')
    response = send_from_directory(current_app.config['UPLOAD_FOLDER'], safe_filename, conditional=True, etag=True)
    response.headers['Cache-Control'] = 'public, max-age=604800'
    response.headers['Cross-Origin-Resource-Policy'] = 'cross-origin'
    return response
