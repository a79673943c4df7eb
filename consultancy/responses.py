"""JSON response envelope shared by every API blueprint."""
import math

from flask import jsonify

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def success(data=None, message=None, meta=None, status=200):
    payload = {'success': True, 'data': data}
    if message:
        payload['message'] = message
    if meta:
        payload['meta'] = meta
    return jsonify(payload), status


def error_response(message, status=400, errors=None):
    payload = {'success': False, 'message': message}
    if errors:
        payload['errors'] = errors
    return jsonify(payload), status


def pagination_meta(page, per_page, total):
    last_page = max(1, math.ceil(total / per_page)) if per_page else 1
    return {
        'pagination': {
            'current_page': page,
            'per_page': per_page,
            'total': total,
            'last_page': last_page,
            'has_more': page < last_page,
        }
    }


def paginate(query, page, per_page, serializer):
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return [serializer(item) for item in items], pagination_meta(page, per_page, total)
