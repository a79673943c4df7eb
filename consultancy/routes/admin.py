from datetime import timedelta
from decimal import Decimal
from urllib.parse import urlparse

from flask import Blueprint, Response, current_app, request
from flask_login import current_user
from slugify import slugify
from sqlalchemy import func, or_

from .. import content
from ..auth import admin_required, permission_required, revoke_user_tokens
from ..errors import ApiError, FieldErrors, get_or_404
from ..integrations import ringcentral, suitedash
from ..integrations.base import get_integration_setting, recent_logs
from ..models import (
    ADMIN_ROLES,
    ALL_PERMISSIONS,
    CONTACT_STATUS_ARCHIVED,
    CONTACT_STATUS_IN_PROGRESS,
    CONTACT_STATUS_NEW,
    CONTACT_STATUS_RESOLVED,
    CONTACT_STATUSES,
    INTEGRATION_MODES,
    LOG_STATUS_FAILED,
    LOG_STATUS_PENDING,
    LOG_STATUS_SUCCESS,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_PENDING,
    PAYMENT_STATUS_PAID,
    PROVIDER_RINGCENTRAL,
    PROVIDER_SUITEDASH,
    ROLE_CUSTOMER,
    ROLE_SUPER_ADMIN,
    SERVICE_TYPES,
    ContactSubmission,
    Faq,
    Order,
    Pillar,
    RefreshToken,
    Service,
    User,
    db,
    normalize_contact_status,
    normalize_service_type,
    normalize_user_role,
    utc_now_naive,
)
from ..orders import (
    apply_status_update,
    bulk_delete_orders,
    delete_order,
    order_search_query,
    order_stats,
)
from ..responses import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, error_response, paginate, success
from ..theme import DEFAULT_THEME, merge_theme, render_theme_css, theme_css_vars
from ..uploads import delete_upload, save_upload, validate_uploaded_file
from ..utils import (
    PENNY,
    clean_text,
    escape_like,
    is_masked,
    is_valid_slug,
    json_body,
    mask_secret,
    parse_bool,
    parse_decimal,
    parse_int,
    parse_positive_int,
    sanitize_html,
)

admin_bp = Blueprint('admin', __name__)

CONTENT_SECTION_ROUTES = {
    'settings': content.SECTION_SETTINGS,
    'header': content.SECTION_HEADER,
    'footer': content.SECTION_FOOTER,
}
SUITEDASH_SECRET_FIELDS = ('public_id', 'secret_key')
RINGCENTRAL_SECRET_FIELDS = ('client_id', 'client_secret', 'jwt_token')


def _page_args():
    page = parse_int(request.args.get('page'), default=1, min_value=1)
    per_page = parse_int(request.args.get('limit'), default=DEFAULT_PAGE_SIZE, min_value=1, max_value=MAX_PAGE_SIZE)
    return page, per_page


def _search_pattern():
    search = clean_text(request.args.get('search'), 200).lower()
    return f'%{escape_like(search)}%' if search else None


def _payload_ids(payload):
    ids = payload.get('ids')
    if not isinstance(ids, list) or not ids:
        errors = FieldErrors()
        errors.add('ids', 'Provide a non-empty list of ids.')
        errors.raise_if_any()
    return ids


def _money(value):
    return float(Decimal(str(value or 0)).quantize(PENNY))


def _uploaded_file():
    file = request.files.get('file') or request.files.get('image')
    error = validate_uploaded_file(file)
    if error:
        errors = FieldErrors()
        errors.add('file', error)
        errors.raise_if_any()
    return file


# Dashboard

@admin_bp.route('/dashboard/stats')
@admin_required
def dashboard_stats():
    revenue = (
        db.session.query(func.coalesce(func.sum(Order.total), 0))
        .filter(Order.payment_status == PAYMENT_STATUS_PAID)
        .scalar()
    )
    recent_orders = Order.query.order_by(Order.created_at.desc(), Order.id.desc()).limit(5).all()
    recent_contacts = ContactSubmission.query.order_by(
        ContactSubmission.created_at.desc(), ContactSubmission.id.desc()
    ).limit(5).all()
    return success({
        'contacts': {
            'total': ContactSubmission.query.count(),
            'new': ContactSubmission.query.filter_by(status=CONTACT_STATUS_NEW).count(),
        },
        'users': {
            'total': User.query.count(),
            'active': User.query.filter_by(is_active=True).count(),
        },
        'orders': {
            'total': Order.query.count(),
            'pending': Order.query.filter_by(status=ORDER_STATUS_PENDING).count(),
            'completed': Order.query.filter_by(status=ORDER_STATUS_COMPLETED).count(),
        },
        'revenue': _money(revenue),
        'recent_orders': [order.to_dict() for order in recent_orders],
        'recent_contacts': [submission.to_dict() for submission in recent_contacts],
    })


# Content

@admin_bp.route('/content/<section>', methods=['GET'])
@admin_required
def get_content_section(section):
    key = CONTENT_SECTION_ROUTES.get(section)
    if key is None:
        raise ApiError('Content section not found', 404)
    return success(content.get_section(key))


@admin_bp.route('/content/<section>', methods=['PUT'])
@admin_required
def update_content_section(section):
    key = CONTENT_SECTION_ROUTES.get(section)
    if key is None:
        raise ApiError('Content section not found', 404)
    return success(content.save_section(key, json_body()), 'Content updated')


@admin_bp.route('/content/pages/<page>', methods=['GET'])
@admin_required
def get_content_page(page):
    if page not in content.PAGE_SECTIONS:
        raise ApiError('Page not found', 404)
    return success(content.get_section(page))


@admin_bp.route('/content/pages/<page>', methods=['PUT'])
@admin_required
def update_content_page(page):
    if page not in content.PAGE_SECTIONS:
        raise ApiError('Page not found', 404)
    return success(content.save_section(page, json_body()), 'Content updated')


@admin_bp.route('/content/header/logo', methods=['POST'])
@admin_required
def upload_header_logo():
    file = _uploaded_file()
    previous = content.get_section(content.SECTION_HEADER).get('logo_image')
    url = save_upload(file)
    content.save_section(content.SECTION_HEADER, {'logo_image': url})
    delete_upload(previous)
    current_app.logger.info(f'Header logo replaced by user {current_user.id}.')
    return success({'logo_image': url}, 'Logo uploaded')


@admin_bp.route('/content/header/logo', methods=['DELETE'])
@admin_required
def delete_header_logo():
    previous = content.get_section(content.SECTION_HEADER).get('logo_image')
    content.save_section(content.SECTION_HEADER, {'logo_image': None})
    delete_upload(previous)
    return success({'logo_image': None}, 'Logo removed')


@admin_bp.route('/content/pages/home/hero-image', methods=['POST'])
@admin_required
def upload_hero_image():
    file = _uploaded_file()
    previous = content.get_section(content.SECTION_HOME).get('hero', {}).get('background_image')
    url = save_upload(file)
    content.save_section(content.SECTION_HOME, {'hero': {'background_image': url}})
    delete_upload(previous)
    return success({'background_image': url}, 'Hero image uploaded')


@admin_bp.route('/content/pages/home/hero-image', methods=['DELETE'])
@admin_required
def delete_hero_image():
    previous = content.get_section(content.SECTION_HOME).get('hero', {}).get('background_image')
    # Removing the upload falls back to the stock hero image.
    default_image = content.DEFAULT_CONTENT[content.SECTION_HOME]['hero']['background_image']
    content.save_section(content.SECTION_HOME, {'hero': {'background_image': default_image}})
    delete_upload(previous)
    return success({'background_image': default_image}, 'Hero image removed')


# Theme

def _theme_payload(theme):
    return {'theme': theme, 'css_vars': theme_css_vars(theme)}


@admin_bp.route('/theme', methods=['GET'])
@admin_required
def get_theme():
    return success({**_theme_payload(content.get_theme()), 'defaults': dict(DEFAULT_THEME)})


@admin_bp.route('/theme', methods=['PUT'])
@admin_required
def update_theme():
    theme = content.save_theme(json_body())
    current_app.logger.info(f'Theme updated by user {current_user.id}.')
    return success(_theme_payload(theme), 'Theme updated')


@admin_bp.route('/theme/reset', methods=['POST'])
@admin_required
def reset_theme():
    return success(_theme_payload(content.reset_theme()), 'Theme reset to defaults')


@admin_bp.route('/theme/preview', methods=['POST'])
@admin_required
def preview_theme():
    theme = merge_theme(content.get_theme(), json_body())
    return success({**_theme_payload(theme), 'css': render_theme_css(theme)})


# Settings

@admin_bp.route('/website-settings', methods=['GET'])
@admin_required
def get_website_settings():
    return success(content.get_website_settings())


@admin_bp.route('/website-settings', methods=['PUT'])
@admin_required
def update_website_settings():
    return success(content.save_website_settings(json_body()), 'Website settings updated')


@admin_bp.route('/system-settings', methods=['GET'])
@admin_required
def get_system_settings():
    return success(content.get_system_settings())


@admin_bp.route('/system-settings', methods=['PUT'])
@admin_required
def update_system_settings():
    return success(content.save_system_settings(json_body()), 'System settings updated')


# Catalogue helpers

def _resolve_slug(model, payload, source_text, errors, record=None):
    """Return the slug to store, or None when it should stay unchanged."""
    raw_slug = clean_text(payload.get('slug'), 220).lower()
    if raw_slug:
        if not is_valid_slug(raw_slug):
            errors.add('slug', 'Slug may only contain lowercase letters, numbers and hyphens.')
            return None
        slug = raw_slug
    elif record is None or ('slug' in payload and not raw_slug):
        slug = slugify(source_text or '')
        if not slug:
            errors.add('slug', 'Unable to generate a valid slug.')
            return None
    else:
        return None

    query = model.query.filter(model.slug == slug)
    if record is not None:
        query = query.filter(model.id != record.id)
    if query.first() is not None:
        raise ApiError('A record with this slug already exists', 409)
    return slug


def _ordering_and_flags(payload, values, flags=('is_active',)):
    if 'sort_order' in payload:
        values['sort_order'] = parse_int(payload.get('sort_order'), default=0, min_value=-100000, max_value=100000)
    for flag in flags:
        if flag in payload:
            values[flag] = parse_bool(payload.get(flag))


def _apply(record, values):
    for key, value in values.items():
        setattr(record, key, value)


def _toggle_active(record):
    record.is_active = not record.is_active
    db.session.commit()
    return record


def _reorder(model, payload):
    ids = _payload_ids(payload)
    parsed = [parse_positive_int(raw_id) for raw_id in ids]
    if any(record_id is None for record_id in parsed):
        raise ApiError('ids must be positive integers', 422)
    records = {record.id: record for record in model.query.filter(model.id.in_(parsed)).all()}
    missing = [record_id for record_id in parsed if record_id not in records]
    if missing:
        raise ApiError(f"Unknown id(s): {', '.join(str(record_id) for record_id in missing)}", 404)
    for position, record_id in enumerate(parsed, start=1):
        records[record_id].sort_order = position
    db.session.commit()
    return [records[record_id] for record_id in parsed]


# Pillars

def _pillar_values(payload, pillar=None):
    errors = FieldErrors()
    values = {}
    if pillar is None or 'name' in payload:
        name = clean_text(payload.get('name'), 200)
        if not 2 <= len(name) <= 120:
            errors.add('name', 'Name must be between 2 and 120 characters.')
        values['name'] = name
    slug = _resolve_slug(Pillar, payload, values.get('name') or (pillar.name if pillar else ''), errors, pillar)
    if slug:
        values['slug'] = slug
    for key, limit in (
        ('tagline', 255),
        ('icon', 80),
        ('hero_image', 500),
        ('card_image', 500),
        ('meta_title', 255),
        ('meta_description', 500),
    ):
        if key in payload:
            values[key] = clean_text(payload.get(key), limit) or None
    if 'description' in payload:
        values['description'] = sanitize_html(payload.get('description'), 20000) or None
    _ordering_and_flags(payload, values)
    errors.raise_if_any()
    return values


@admin_bp.route('/pillars', methods=['GET'])
@admin_required
def list_pillars():
    query = Pillar.query
    if request.args.get('active') is not None:
        query = query.filter(Pillar.is_active.is_(parse_bool(request.args.get('active'))))
    pattern = _search_pattern()
    if pattern:
        query = query.filter(func.lower(Pillar.name).like(pattern, escape='\\'))
    pillars = query.order_by(Pillar.sort_order.asc(), Pillar.id.asc()).all()
    return success([
        {**pillar.to_dict(), 'total_services': pillar.services.count(), 'faqs_count': pillar.faqs.count()}
        for pillar in pillars
    ])


@admin_bp.route('/pillars/<int:pillar_id>', methods=['GET'])
@admin_required
def get_pillar(pillar_id):
    pillar = get_or_404(Pillar, pillar_id, 'Pillar not found')
    services = pillar.services.order_by(Service.sort_order.asc(), Service.id.asc()).all()
    return success({**pillar.to_dict(), 'services': [service.to_dict(include_pillar=False) for service in services]})


@admin_bp.route('/pillars', methods=['POST'])
@admin_required
def create_pillar():
    pillar = Pillar(**_pillar_values(json_body()))
    db.session.add(pillar)
    db.session.commit()
    current_app.logger.info(f'Pillar {pillar.slug} created by user {current_user.id}.')
    return success(pillar.to_dict(), 'Pillar created', status=201)


@admin_bp.route('/pillars/<int:pillar_id>', methods=['PUT', 'PATCH'])
@admin_required
def update_pillar(pillar_id):
    pillar = get_or_404(Pillar, pillar_id, 'Pillar not found')
    _apply(pillar, _pillar_values(json_body(), pillar))
    db.session.commit()
    return success(pillar.to_dict(), 'Pillar updated')


@admin_bp.route('/pillars/<int:pillar_id>', methods=['DELETE'])
@admin_required
def delete_pillar(pillar_id):
    pillar = get_or_404(Pillar, pillar_id, 'Pillar not found')
    if pillar.services.count():
        raise ApiError('Pillar still has services. Move or delete them first.', 409)
    Faq.query.filter_by(pillar_id=pillar.id).delete(synchronize_session=False)
    ContactSubmission.query.filter_by(pillar_id=pillar.id).update({'pillar_id': None}, synchronize_session=False)
    db.session.delete(pillar)
    db.session.commit()
    current_app.logger.info(f'Pillar {pillar_id} deleted by user {current_user.id}.')
    return success(None, 'Pillar deleted')


@admin_bp.route('/pillars/<int:pillar_id>/toggle-active', methods=['PATCH', 'POST'])
@admin_required
def toggle_pillar(pillar_id):
    pillar = _toggle_active(get_or_404(Pillar, pillar_id, 'Pillar not found'))
    return success(pillar.to_dict(), 'Pillar activated' if pillar.is_active else 'Pillar deactivated')


@admin_bp.route('/pillars/reorder', methods=['POST', 'PUT'])
@admin_required
def reorder_pillars():
    pillars = _reorder(Pillar, json_body())
    return success([pillar.to_dict() for pillar in pillars], 'Pillars reordered')


# Services

def _service_values(payload, service=None):
    errors = FieldErrors()
    values = {}
    if service is None or 'pillar_id' in payload:
        pillar_id = parse_positive_int(payload.get('pillar_id'))
        if pillar_id is None or db.session.get(Pillar, pillar_id) is None:
            errors.add('pillar_id', 'A valid pillar is required.')
        values['pillar_id'] = pillar_id
    if service is None or 'type' in payload:
        service_type = normalize_service_type(payload.get('type'))
        if service_type is None:
            errors.add('type', f"Type must be one of: {', '.join(SERVICE_TYPES)}.")
        values['type'] = service_type
    if service is None or 'title' in payload:
        title = clean_text(payload.get('title'), 300)
        if not 2 <= len(title) <= 200:
            errors.add('title', 'Title must be between 2 and 200 characters.')
        values['title'] = title
    slug = _resolve_slug(Service, payload, values.get('title') or (service.title if service else ''), errors, service)
    if slug:
        values['slug'] = slug
    if 'summary' in payload:
        values['summary'] = clean_text(payload.get('summary'), 2000) or None
    if 'details' in payload:
        values['details'] = sanitize_html(payload.get('details')) or None
    if 'icon' in payload:
        values['icon'] = clean_text(payload.get('icon'), 80) or None
    if service is None or 'price_from' in payload:
        price = parse_decimal(payload.get('price_from', 0))
        if price is None or price < 0:
            errors.add('price_from', 'Price must be a number greater than or equal to 0.')
        values['price_from'] = price
    if 'price_label' in payload:
        values['price_label'] = clean_text(payload.get('price_label'), 80) or None
    _ordering_and_flags(payload, values, flags=('is_active', 'is_featured'))
    errors.raise_if_any()
    return values


@admin_bp.route('/services', methods=['GET'])
@admin_required
def list_services():
    query = Service.query
    pillar_id = parse_positive_int(request.args.get('pillar_id'))
    if pillar_id:
        query = query.filter(Service.pillar_id == pillar_id)
    if request.args.get('type'):
        service_type = normalize_service_type(request.args.get('type'))
        if service_type is None:
            raise ApiError('Invalid service type filter', 422)
        query = query.filter(Service.type == service_type)
    if request.args.get('active') is not None:
        query = query.filter(Service.is_active.is_(parse_bool(request.args.get('active'))))
    if request.args.get('featured') is not None:
        query = query.filter(Service.is_featured.is_(parse_bool(request.args.get('featured'))))
    pattern = _search_pattern()
    if pattern:
        query = query.filter(func.lower(Service.title).like(pattern, escape='\\'))
    services = query.order_by(Service.pillar_id.asc(), Service.sort_order.asc(), Service.id.asc()).all()
    return success([service.to_dict() for service in services])


@admin_bp.route('/services/<int:service_id>', methods=['GET'])
@admin_required
def get_service(service_id):
    return success(get_or_404(Service, service_id, 'Service not found').to_dict())


@admin_bp.route('/services', methods=['POST'])
@admin_required
def create_service():
    service = Service(**_service_values(json_body()))
    db.session.add(service)
    db.session.commit()
    current_app.logger.info(f'Service {service.slug} created by user {current_user.id}.')
    return success(service.to_dict(), 'Service created', status=201)


@admin_bp.route('/services/<int:service_id>', methods=['PUT', 'PATCH'])
@admin_required
def update_service(service_id):
    service = get_or_404(Service, service_id, 'Service not found')
    _apply(service, _service_values(json_body(), service))
    db.session.commit()
    return success(service.to_dict(), 'Service updated')


@admin_bp.route('/services/<int:service_id>', methods=['DELETE'])
@admin_required
def delete_service(service_id):
    service = get_or_404(Service, service_id, 'Service not found')
    db.session.delete(service)
    db.session.commit()
    current_app.logger.info(f'Service {service_id} deleted by user {current_user.id}.')
    return success(None, 'Service deleted')


@admin_bp.route('/services/<int:service_id>/toggle-active', methods=['PATCH', 'POST'])
@admin_required
def toggle_service(service_id):
    service = _toggle_active(get_or_404(Service, service_id, 'Service not found'))
    return success(service.to_dict(), 'Service activated' if service.is_active else 'Service deactivated')


@admin_bp.route('/services/reorder', methods=['POST', 'PUT'])
@admin_required
def reorder_services():
    services = _reorder(Service, json_body())
    return success([service.to_dict(include_pillar=False) for service in services], 'Services reordered')


# FAQs

def _faq_values(payload, faq=None):
    errors = FieldErrors()
    values = {}
    if 'pillar_id' in payload:
        raw_pillar_id = payload.get('pillar_id')
        if raw_pillar_id in (None, ''):
            values['pillar_id'] = None
        else:
            pillar_id = parse_positive_int(raw_pillar_id)
            if pillar_id is None or db.session.get(Pillar, pillar_id) is None:
                errors.add('pillar_id', 'Pillar not found.')
            values['pillar_id'] = pillar_id
    if faq is None or 'question' in payload:
        question = clean_text(payload.get('question'), 600)
        if not 5 <= len(question) <= 500:
            errors.add('question', 'Question must be between 5 and 500 characters.')
        values['question'] = question
    if faq is None or 'answer' in payload:
        answer = sanitize_html(payload.get('answer'), 20000)
        if not answer:
            errors.add('answer', 'Answer is required.')
        values['answer'] = answer
    if 'category' in payload:
        values['category'] = clean_text(payload.get('category'), 80) or None
    _ordering_and_flags(payload, values)
    errors.raise_if_any()
    return values


@admin_bp.route('/faqs', methods=['GET'])
@admin_required
def list_faqs():
    query = Faq.query
    pillar_filter = request.args.get('pillar_id')
    if pillar_filter == 'global':
        query = query.filter(Faq.pillar_id.is_(None))
    elif parse_positive_int(pillar_filter):
        query = query.filter(Faq.pillar_id == parse_positive_int(pillar_filter))
    if request.args.get('active') is not None:
        query = query.filter(Faq.is_active.is_(parse_bool(request.args.get('active'))))
    pattern = _search_pattern()
    if pattern:
        query = query.filter(func.lower(Faq.question).like(pattern, escape='\\'))
    faqs = query.order_by(Faq.sort_order.asc(), Faq.id.asc()).all()
    return success([faq.to_dict() for faq in faqs])


@admin_bp.route('/faqs/<int:faq_id>', methods=['GET'])
@admin_required
def get_faq(faq_id):
    return success(get_or_404(Faq, faq_id, 'FAQ not found').to_dict())


@admin_bp.route('/faqs', methods=['POST'])
@admin_required
def create_faq():
    faq = Faq(**_faq_values(json_body()))
    db.session.add(faq)
    db.session.commit()
    return success(faq.to_dict(), 'FAQ created', status=201)


@admin_bp.route('/faqs/<int:faq_id>', methods=['PUT', 'PATCH'])
@admin_required
def update_faq(faq_id):
    faq = get_or_404(Faq, faq_id, 'FAQ not found')
    _apply(faq, _faq_values(json_body(), faq))
    db.session.commit()
    return success(faq.to_dict(), 'FAQ updated')


@admin_bp.route('/faqs/<int:faq_id>', methods=['DELETE'])
@admin_required
def delete_faq(faq_id):
    faq = get_or_404(Faq, faq_id, 'FAQ not found')
    db.session.delete(faq)
    db.session.commit()
    return success(None, 'FAQ deleted')


@admin_bp.route('/faqs/<int:faq_id>/toggle-active', methods=['PATCH', 'POST'])
@admin_required
def toggle_faq(faq_id):
    faq = _toggle_active(get_or_404(Faq, faq_id, 'FAQ not found'))
    return success(faq.to_dict(), 'FAQ activated' if faq.is_active else 'FAQ deactivated')


@admin_bp.route('/faqs/reorder', methods=['POST', 'PUT'])
@admin_required
def reorder_faqs():
    faqs = _reorder(Faq, json_body())
    return success([faq.to_dict(include_pillar=False) for faq in faqs], 'FAQs reordered')


# Contact submissions

@admin_bp.route('/contact-submissions', methods=['GET'])
@admin_required
def list_contact_submissions():
    query = ContactSubmission.query
    if request.args.get('status'):
        status = normalize_contact_status(request.args.get('status'))
        if status is None:
            raise ApiError('Invalid status filter', 422)
        query = query.filter(ContactSubmission.status == status)
    pattern = _search_pattern()
    if pattern:
        query = query.filter(or_(
            func.lower(ContactSubmission.name).like(pattern, escape='\\'),
            func.lower(ContactSubmission.email).like(pattern, escape='\\'),
            func.lower(ContactSubmission.subject).like(pattern, escape='\\'),
        ))
    page, per_page = _page_args()
    query = query.order_by(ContactSubmission.created_at.desc(), ContactSubmission.id.desc())
    items, meta = paginate(query, page, per_page, lambda submission: submission.to_dict())
    return success(items, meta=meta)


@admin_bp.route('/contact-submissions/stats', methods=['GET'])
@admin_required
def contact_submission_stats():
    counts = dict(
        db.session.query(ContactSubmission.status, func.count(ContactSubmission.id))
        .group_by(ContactSubmission.status)
        .all()
    )
    week_ago = utc_now_naive() - timedelta(days=7)
    return success({
        'total': sum(counts.values()),
        'new': counts.get(CONTACT_STATUS_NEW, 0),
        'in_progress': counts.get(CONTACT_STATUS_IN_PROGRESS, 0),
        'resolved': counts.get(CONTACT_STATUS_RESOLVED, 0),
        'archived': counts.get(CONTACT_STATUS_ARCHIVED, 0),
        'this_week': ContactSubmission.query.filter(ContactSubmission.created_at >= week_ago).count(),
        'suitedash_synced': ContactSubmission.query.filter(ContactSubmission.suitedash_contact_id.isnot(None)).count(),
    })


@admin_bp.route('/contact-submissions/<int:submission_id>', methods=['GET'])
@admin_required
def get_contact_submission(submission_id):
    return success(get_or_404(ContactSubmission, submission_id, 'Contact submission not found').to_dict())


@admin_bp.route('/contact-submissions/<int:submission_id>/status', methods=['PATCH'])
@admin_required
def update_contact_submission_status(submission_id):
    submission = get_or_404(ContactSubmission, submission_id, 'Contact submission not found')
    status = normalize_contact_status(json_body().get('status'))
    if status is None:
        errors = FieldErrors()
        errors.add('status', f"Status must be one of: {', '.join(CONTACT_STATUSES)}.")
        errors.raise_if_any()
    submission.status = status
    db.session.commit()
    return success(submission.to_dict(), 'Status updated')


@admin_bp.route('/contact-submissions/<int:submission_id>', methods=['DELETE'])
@admin_required
def delete_contact_submission(submission_id):
    submission = get_or_404(ContactSubmission, submission_id, 'Contact submission not found')
    db.session.delete(submission)
    db.session.commit()
    return success(None, 'Contact submission deleted')


@admin_bp.route('/contact-submissions/bulk-delete', methods=['POST'])
@admin_required
def bulk_delete_contact_submissions():
    deleted = 0
    failed = 0
    for raw_id in _payload_ids(json_body()):
        submission_id = parse_positive_int(raw_id)
        submission = db.session.get(ContactSubmission, submission_id) if submission_id else None
        if submission is None:
            failed += 1
            continue
        db.session.delete(submission)
        deleted += 1
    db.session.commit()
    return success({'deleted': deleted, 'failed': failed}, f'{deleted} submission(s) deleted')


@admin_bp.route('/contact-submissions/<int:submission_id>/resync', methods=['POST'])
@admin_required
def resync_contact_submission(submission_id):
    submission = get_or_404(ContactSubmission, submission_id, 'Contact submission not found')
    result = suitedash.sync_contact_submission(submission)
    return success({**result, 'submission': submission.to_dict()}, 'Contact synced to SuiteDash')


# Users

def _guard_self(user, action):
    if user.id == current_user.id:
        raise ApiError(f'You cannot {action} your own account', 400)
    if user.role_key == ROLE_SUPER_ADMIN and current_user.role_key != ROLE_SUPER_ADMIN:
        raise ApiError('Only a super admin can change another super admin', 403)


def _delete_user(user):
    Order.query.filter_by(user_id=user.id).update({'user_id': None}, synchronize_session=False)
    RefreshToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    db.session.delete(user)


@admin_bp.route('/users', methods=['GET'])
@admin_required
def list_users():
    query = User.query
    status = clean_text(request.args.get('status'), 20).lower()
    if status:
        if status not in ('active', 'inactive'):
            raise ApiError('Invalid status filter', 422)
        query = query.filter(User.is_active.is_(status == 'active'))
    if request.args.get('role'):
        role = normalize_user_role(request.args.get('role'), default=None)
        if role is None:
            raise ApiError('Invalid role filter', 422)
        query = query.filter(User.role == role)
    pattern = _search_pattern()
    if pattern:
        query = query.filter(or_(
            func.lower(User.name).like(pattern, escape='\\'),
            func.lower(User.email).like(pattern, escape='\\'),
        ))
    page, per_page = _page_args()
    query = query.order_by(User.created_at.desc(), User.id.desc())
    items, meta = paginate(query, page, per_page, lambda user: user.to_dict())
    return success(items, meta=meta)


@admin_bp.route('/users/stats', methods=['GET'])
@admin_required
def user_stats():
    month_ago = utc_now_naive() - timedelta(days=30)
    return success({
        'total': User.query.count(),
        'active': User.query.filter_by(is_active=True).count(),
        'inactive': User.query.filter_by(is_active=False).count(),
        'admins': User.query.filter(User.role.in_(tuple(ADMIN_ROLES))).count(),
        'customers': User.query.filter_by(role=ROLE_CUSTOMER).count(),
        'new_this_month': User.query.filter(User.created_at >= month_ago).count(),
        'suitedash_synced': User.query.filter(User.suitedash_contact_id.isnot(None)).count(),
    })


@admin_bp.route('/users/<int:user_id>', methods=['GET'])
@admin_required
def get_user(user_id):
    user = get_or_404(User, user_id, 'User not found')
    orders = user.orders.order_by(Order.created_at.desc(), Order.id.desc()).limit(10).all()
    return success({
        **user.to_dict(),
        'orders_count': user.orders.count(),
        'recent_orders': [order.to_dict() for order in orders],
    })


@admin_bp.route('/users/<int:user_id>/status', methods=['PATCH'])
@admin_required
def update_user_status(user_id):
    user = get_or_404(User, user_id, 'User not found')
    payload = json_body()
    status = clean_text(payload.get('status'), 20).lower()
    if status not in ('active', 'inactive'):
        if 'is_active' not in payload:
            errors = FieldErrors()
            errors.add('status', 'Status must be active or inactive.')
            errors.raise_if_any()
        status = 'active' if parse_bool(payload.get('is_active')) else 'inactive'
    activate = status == 'active'
    _guard_self(user, 'activate' if activate else 'deactivate')
    user.is_active = activate
    revoked = 0 if activate else revoke_user_tokens(user)
    db.session.commit()
    current_app.logger.info(f'User {user.id} set {status} by user {current_user.id}; revoked {revoked} token(s).')
    return success(user.to_dict(), 'User activated' if activate else 'User deactivated')


@admin_bp.route('/users/<int:user_id>/permissions', methods=['PUT'])
@admin_required
@permission_required('users:manage')
def update_user_permissions(user_id):
    """Replace the permissions granted on top of a user's role."""
    if current_user.role_key != ROLE_SUPER_ADMIN:
        raise ApiError('Only a super admin can grant permissions', 403)
    user = get_or_404(User, user_id, 'User not found')
    granted = json_body().get('permissions')
    if not isinstance(granted, list) or any(p not in ALL_PERMISSIONS for p in granted):
        errors = FieldErrors()
        errors.add('permissions', f"Permissions must be a list drawn from: {', '.join(sorted(ALL_PERMISSIONS))}.")
        errors.raise_if_any()
    user.extra_permissions = granted
    db.session.commit()
    current_app.logger.info(f'Permissions for user {user.id} set by user {current_user.id}.')
    return success(user.to_dict(), 'Permissions updated')


@admin_bp.route('/users/<int:user_id>', methods=['DELETE'])
@admin_required
def delete_user(user_id):
    user = get_or_404(User, user_id, 'User not found')
    _guard_self(user, 'delete')
    _delete_user(user)
    db.session.commit()
    current_app.logger.info(f'User {user_id} deleted by user {current_user.id}.')
    return success(None, 'User deleted')


@admin_bp.route('/users/bulk-delete', methods=['POST'])
@admin_required
def bulk_delete_users():
    deleted = 0
    failed = 0
    for raw_id in _payload_ids(json_body()):
        user_id = parse_positive_int(raw_id)
        user = db.session.get(User, user_id) if user_id else None
        if user is None:
            failed += 1
            continue
        try:
            _guard_self(user, 'delete')
        except ApiError:
            failed += 1
            continue
        _delete_user(user)
        deleted += 1
    db.session.commit()
    return success({'deleted': deleted, 'failed': failed}, f'{deleted} user(s) deleted')


@admin_bp.route('/users/<int:user_id>/sync-suitedash', methods=['POST'])
@admin_required
def sync_user_to_suitedash(user_id):
    user = get_or_404(User, user_id, 'User not found')
    result = suitedash.sync_user(user)
    return success({**result, 'user': user.to_dict()}, 'User synced to SuiteDash')


# Orders

@admin_bp.route('/orders', methods=['GET'])
@admin_required
def list_orders():
    query = order_search_query(
        status=clean_text(request.args.get('status'), 30),
        payment_status=clean_text(request.args.get('paymentStatus') or request.args.get('payment_status'), 30),
        search=clean_text(request.args.get('search'), 200),
    )
    page, per_page = _page_args()
    items, meta = paginate(query, page, per_page, lambda order: order.to_dict())
    return success(items, meta=meta)


@admin_bp.route('/orders/stats', methods=['GET'])
@admin_required
def get_order_stats():
    return success(order_stats())


@admin_bp.route('/orders/<int:order_id>', methods=['GET'])
@admin_required
def get_order(order_id):
    return success(get_or_404(Order, order_id, 'Order not found').to_dict())


@admin_bp.route('/orders/<int:order_id>/status', methods=['PATCH'])
@admin_required
def update_order_status(order_id):
    order = get_or_404(Order, order_id, 'Order not found')
    apply_status_update(order, json_body())
    return success(order.to_dict(), 'Order updated')


@admin_bp.route('/orders/<int:order_id>/payment-status', methods=['PATCH'])
@admin_required
def update_order_payment_status(order_id):
    order = get_or_404(Order, order_id, 'Order not found')
    payload = json_body()
    payment_status = payload.get('paymentStatus', payload.get('payment_status'))
    if payment_status is None:
        errors = FieldErrors()
        errors.add('paymentStatus', 'Payment status is required.')
        errors.raise_if_any()
    apply_status_update(order, {'paymentStatus': payment_status})
    return success(order.to_dict(), 'Payment status updated')


@admin_bp.route('/orders/<int:order_id>', methods=['DELETE'])
@admin_required
def remove_order(order_id):
    order = get_or_404(Order, order_id, 'Order not found')
    result = delete_order(order, sync_suitedash=parse_bool(request.args.get('sync_suitedash')))
    current_app.logger.info(f'Order {order_id} deleted by user {current_user.id}.')
    return success(result, 'Order deleted')


@admin_bp.route('/orders/bulk-delete', methods=['POST'])
@admin_required
def bulk_remove_orders():
    payload = json_body()
    result = bulk_delete_orders(_payload_ids(payload), sync_suitedash=parse_bool(payload.get('sync_suitedash')))
    return success(result, f"{result['deleted']} order(s) deleted")


@admin_bp.route('/orders/<int:order_id>/sync-suitedash', methods=['POST'])
@admin_required
def sync_order_to_suitedash(order_id):
    order = get_or_404(Order, order_id, 'Order not found')
    result = suitedash.sync_order(order)
    return success({**result, 'order': order.to_dict()}, 'Order synced to SuiteDash')


@admin_bp.route('/orders/sync-all-suitedash', methods=['POST'])
@admin_required
def sync_all_orders_to_suitedash():
    result = suitedash.sync_all_orders()
    message = f"Synced {result['synced']} of {result['total']} order(s)"
    if result['rate_limited']:
        message += f"; stopped on SuiteDash rate limit with {result['skipped']} left"
    return success(result, message)


# Integrations

def _setting_summary(setting):
    return {
        'provider': setting.provider,
        'is_enabled': bool(setting.is_enabled),
        'mode': setting.mode,
        'connection_status': setting.connection_status,
        'last_tested_at': setting.last_tested_at.isoformat() if setting.last_tested_at else None,
        'last_test_success': setting.last_test_success,
        'last_test_message': setting.last_test_message,
        'last_sync_at': setting.last_sync_at.isoformat() if setting.last_sync_at else None,
    }


def _merge_credentials(setting, payload, fields, secret_fields, errors):
    """Apply submitted credentials; a masked secret sent back keeps the stored value."""
    credentials = setting.credentials
    for field in fields:
        if field not in payload:
            continue
        value = clean_text(payload.get(field), 4000)
        if field in secret_fields and is_masked(value):
            continue
        if field.endswith('_url') and value:
            parsed = urlparse(value)
            if parsed.scheme != 'https' or not parsed.netloc:
                errors.add(field, 'Must be an https URL.')
                continue
            value = value.rstrip('/')
        credentials[field] = value
    setting.credentials = credentials


def _test_response(result):
    if result.get('success'):
        return success(result, result.get('message'))
    return error_response(result.get('message') or 'Connection failed', 400, {'code': result.get('code')})


def _suitedash_view(setting):
    credentials = setting.credentials
    config = current_app.config
    return {
        **_setting_summary(setting),
        'credentials': {
            'api_url': credentials.get('api_url') or config.get('SUITEDASH_API_BASE_URL'),
            'public_id': mask_secret(credentials.get('public_id') or config.get('SUITEDASH_PUBLIC_ID')),
            'secret_key': mask_secret(credentials.get('secret_key') or config.get('SUITEDASH_SECRET_KEY')),
        },
        'is_configured': suitedash.SuiteDashClient(setting).is_configured,
    }


@admin_bp.route('/integrations/suitedash', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def get_suitedash_settings():
    setting = get_integration_setting(PROVIDER_SUITEDASH)
    db.session.commit()
    return success(_suitedash_view(setting))


@admin_bp.route('/integrations/suitedash', methods=['PUT'])
@admin_required
@permission_required('integrations:manage')
def update_suitedash_settings():
    setting = get_integration_setting(PROVIDER_SUITEDASH)
    payload = json_body()
    errors = FieldErrors()
    if 'mode' in payload:
        mode = clean_text(payload.get('mode'), 20).lower()
        if mode not in INTEGRATION_MODES:
            errors.add('mode', f"Mode must be one of: {', '.join(INTEGRATION_MODES)}.")
        setting.mode = mode
    if 'is_enabled' in payload:
        setting.is_enabled = parse_bool(payload.get('is_enabled'))
    _merge_credentials(setting, payload, ('api_url',) + SUITEDASH_SECRET_FIELDS, SUITEDASH_SECRET_FIELDS, errors)
    if errors:
        db.session.rollback()
        errors.raise_if_any()
    setting.connection_status = 'unknown'
    db.session.commit()
    current_app.logger.info(f'SuiteDash settings updated by user {current_user.id}.')
    return success(_suitedash_view(setting), 'SuiteDash settings saved')


@admin_bp.route('/integrations/suitedash/test', methods=['POST'])
@admin_required
@permission_required('integrations:manage')
def check_suitedash_connection():
    return _test_response(suitedash.check_connection())


@admin_bp.route('/integrations/suitedash/stats', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def suitedash_stats():
    return success(suitedash.stats())


def _logs_response(provider):
    limit = parse_int(request.args.get('limit'), default=50, min_value=1, max_value=200)
    status = clean_text(request.args.get('status'), 20).lower() or None
    if status and status not in (LOG_STATUS_PENDING, LOG_STATUS_SUCCESS, LOG_STATUS_FAILED):
        raise ApiError('Invalid status filter', 422)
    return success([log.to_dict() for log in recent_logs(provider, limit=limit, status=status)])


@admin_bp.route('/integrations/suitedash/logs', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def suitedash_logs():
    return _logs_response(PROVIDER_SUITEDASH)


@admin_bp.route('/integrations/suitedash/sync', methods=['POST'])
@admin_required
@permission_required('integrations:manage')
def run_suitedash_sync():
    sync_type = clean_text(json_body().get('type'), 20).lower()
    if sync_type not in suitedash.SYNC_TYPES:
        errors = FieldErrors()
        errors.add('type', f"Type must be one of: {', '.join(suitedash.SYNC_TYPES)}.")
        errors.raise_if_any()
    result = suitedash.sync_pending(sync_type)
    message = f"Synced {result['synced']} of {result['total']} {sync_type}"
    if result['rate_limited']:
        message += f"; stopped on SuiteDash rate limit with {result['skipped']} left"
    return success(result, message)


@admin_bp.route('/integrations/suitedash/export', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def export_suitedash_contacts():
    csv_text, count = suitedash.export_contacts_csv()
    filename = f"suitedash-contacts-{utc_now_naive().strftime('%Y%m%d')}.csv"
    response = Response(csv_text, mimetype='text/csv')
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
    response.headers['X-Export-Count'] = str(count)
    return response


def _ringcentral_view(setting):
    credentials = setting.credentials
    config = current_app.config
    return {
        **_setting_summary(setting),
        'credentials': {
            'server_url': credentials.get('server_url') or config.get('RINGCENTRAL_SERVER_URL'),
            'client_id': mask_secret(credentials.get('client_id') or config.get('RINGCENTRAL_CLIENT_ID')),
            'client_secret': mask_secret(credentials.get('client_secret') or config.get('RINGCENTRAL_CLIENT_SECRET')),
            'jwt_token': mask_secret(credentials.get('jwt_token') or config.get('RINGCENTRAL_JWT_TOKEN')),
        },
        'settings': {'default_from_number': setting.settings.get('default_from_number') or ''},
        'is_configured': ringcentral.RingCentralClient(setting).is_configured,
    }


@admin_bp.route('/integrations/ringcentral', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def get_ringcentral_settings():
    setting = get_integration_setting(PROVIDER_RINGCENTRAL)
    db.session.commit()
    return success(_ringcentral_view(setting))


@admin_bp.route('/integrations/ringcentral', methods=['PUT'])
@admin_required
@permission_required('integrations:manage')
def update_ringcentral_settings():
    setting = get_integration_setting(PROVIDER_RINGCENTRAL)
    payload = json_body()
    errors = FieldErrors()
    if 'is_enabled' in payload:
        setting.is_enabled = parse_bool(payload.get('is_enabled'))
    _merge_credentials(setting, payload, ('server_url',) + RINGCENTRAL_SECRET_FIELDS, RINGCENTRAL_SECRET_FIELDS, errors)
    if 'default_from_number' in payload:
        raw_number = clean_text(payload.get('default_from_number'), 30)
        number = ringcentral.normalize_phone(raw_number) if raw_number else ''
        if number is None:
            errors.add('default_from_number', 'Must be a phone number of 7 to 15 digits.')
        else:
            setting.settings = {**setting.settings, 'default_from_number': number}
    if errors:
        db.session.rollback()
        errors.raise_if_any()
    setting.connection_status = 'unknown'
    db.session.commit()
    current_app.logger.info(f'RingCentral settings updated by user {current_user.id}.')
    return success(_ringcentral_view(setting), 'RingCentral settings saved')


@admin_bp.route('/integrations/ringcentral/test', methods=['POST'])
@admin_required
@permission_required('integrations:manage')
def check_ringcentral_connection():
    return _test_response(ringcentral.check_connection())


@admin_bp.route('/integrations/ringcentral/stats', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def ringcentral_stats():
    return success(ringcentral.stats())


@admin_bp.route('/integrations/ringcentral/logs', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def ringcentral_logs():
    return _logs_response(PROVIDER_RINGCENTRAL)


@admin_bp.route('/integrations/ringcentral/call', methods=['POST'])
@admin_required
@permission_required('integrations:manage')
def ringcentral_call():
    payload = json_body()
    result, errors = ringcentral.place_call(payload.get('to'), payload.get('from'))
    if errors:
        return error_response('Validation failed', 422, errors)
    return success(result, 'Call started')


@admin_bp.route('/integrations/ringcentral/sms', methods=['POST'])
@admin_required
@permission_required('integrations:manage')
def ringcentral_sms():
    payload = json_body()
    result, errors = ringcentral.send_text(payload.get('to'), payload.get('message'), payload.get('from'))
    if errors:
        return error_response('Validation failed', 422, errors)
    return success(result, 'SMS sent')


@admin_bp.route('/integrations/ringcentral/call-log', methods=['GET'])
@admin_required
@permission_required('integrations:manage')
def ringcentral_call_log():
    per_page = parse_int(request.args.get('limit'), default=100, min_value=1, max_value=250)
    return success(ringcentral.recent_calls(per_page=per_page))
