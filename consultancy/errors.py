from flask import current_app, request
import stripe
from sqlalchemy.exc import IntegrityError, NoResultFound
from werkzeug.exceptions import HTTPException

from .integrations.errors import ERROR_DISABLED, ERROR_NOT_CONFIGURED, ERROR_RATE_LIMITED, IntegrationError
from .models import db
from .responses import error_response

UNIQUE_VIOLATION_SQLSTATE = '23505'
FOREIGN_KEY_VIOLATION_SQLSTATE = '23503'


class ApiError(Exception):
    status_code = 400

    def __init__(self, message, status_code=None, errors=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors


class ValidationError(ApiError):
    status_code = 422

    def __init__(self, errors, message='Validation failed'):
        super().__init__(message, errors=errors)


class FieldErrors:
    """Collects per-field validation messages and raises them together."""

    def __init__(self):
        self.errors = {}

    def add(self, field, message):
        self.errors.setdefault(field, []).append(message)

    def __bool__(self):
        return bool(self.errors)

    def raise_if_any(self):
        if self.errors:
            raise ValidationError(self.errors)


def not_found(message='Record not found'):
    return ApiError(message, 404)


def get_or_404(model, record_id, message='Record not found'):
    record = db.session.get(model, record_id)
    if record is None:
        raise not_found(message)
    return record


def _integrity_kind(error):
    original = getattr(error, 'orig', None)
    sqlstate = getattr(original, 'pgcode', None) or getattr(original, 'sqlstate', None)
    if sqlstate == UNIQUE_VIOLATION_SQLSTATE:
        return 'unique'
    if sqlstate == FOREIGN_KEY_VIOLATION_SQLSTATE:
        return 'foreign_key'
    # SQLite reports constraint failures only through the message text.
    detail = str(original or error).upper()
    if 'UNIQUE' in detail:
        return 'unique'
    if 'FOREIGN KEY' in detail:
        return 'foreign_key'
    return 'other'


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error):
        return error_response(error.message, error.status_code, error.errors)

    @app.errorhandler(IntegrationError)
    def handle_integration_error(error):
        if error.code == ERROR_RATE_LIMITED:
            status = 429
        elif error.code in (ERROR_DISABLED, ERROR_NOT_CONFIGURED):
            status = 400
        else:
            status = 502
        app.logger.warning(f'{error.provider} call failed: {error.code} {error.message}')
        response, status = error_response(error.message, status, error.to_dict())
        if error.retry_after is not None:
            response.headers['Retry-After'] = str(error.retry_after)
        return response, status

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        db.session.rollback()
        kind = _integrity_kind(error)
        if kind == 'unique':
            return error_response('A record with this value already exists', 409)
        if kind == 'foreign_key':
            return error_response('Invalid reference - related record not found', 400)
        app.logger.exception('Unhandled integrity error.')
        return error_response('Database constraint violated', 400)

    @app.errorhandler(NoResultFound)
    def handle_no_result(error):
        return error_response('Record not found', 404)

    @app.errorhandler(stripe.StripeError)
    def handle_stripe_error(error):
        current_app.logger.warning(f'Stripe error: {error.user_message or error}')
        return error_response(error.user_message or str(error) or 'Payment processing failed', 402)

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        if error.code == 404:
            return error_response(f'Route not found: {request.path}', 404)
        if error.code == 405:
            return error_response('Method not allowed', 405)
        if error.code == 413:
            return error_response('Uploaded file is too large', 413)
        return error_response(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        app.logger.exception('Unhandled error while processing request.')
        if app.config.get('APP_ENV') == 'production':
            return error_response('Internal server error', 500)
        return error_response(str(error) or 'Internal server error', 500)
