from flask import Blueprint, current_app, request
import stripe

from ..integrations.base import mark_success, start_log
from ..models import WEBHOOK_PROVIDERS, Order, db
from ..orders import mark_order_paid, mark_order_refunded
from ..payments import find_session_for_payment_intent, parse_webhook_event
from ..responses import error_response
from ..utils import clean_text, parse_positive_int

webhooks_bp = Blueprint('webhooks', __name__)
MAX_RAW_WEBHOOK_BODY = 5000


def _order_from_metadata(stripe_object):
    metadata = stripe_object.get('metadata') or {}
    order_id = parse_positive_int(metadata.get('orderId'))
    if order_id:
        order = db.session.get(Order, order_id)
        if order is not None:
            return order
    order_number = clean_text(metadata.get('orderNumber'), 40)
    if order_number:
        return Order.query.filter_by(order_number=order_number).first()
    return None


def _handle_checkout_completed(session):
    if session.get('payment_status') != 'paid':
        current_app.logger.info(f"Checkout session {session.get('id')} completed without payment.")
        return
    order = _order_from_metadata(session)
    if order is None:
        current_app.logger.warning(f"Checkout session {session.get('id')} has no matching order.")
        return
    mark_order_paid(order, session_id=session.get('id'))


def _handle_charge_refunded(charge):
    order = _order_from_metadata(charge)
    if order is None:
        session_id = find_session_for_payment_intent(charge.get('payment_intent'))
        if session_id:
            order = Order.query.filter_by(stripe_session_id=session_id).first()
    if order is None:
        current_app.logger.warning(f"Refunded charge {charge.get('id')} has no matching order.")
        return
    mark_order_refunded(order)


@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    try:
        event = parse_webhook_event(request.get_data(), request.headers.get('Stripe-Signature'))
    except (ValueError, stripe.SignatureVerificationError) as error:
        current_app.logger.warning(f'Rejected Stripe webhook: {error}')
        return {'error': f'Webhook Error: {error}'}, 400

    event_type = event.get('type')
    stripe_object = (event.get('data') or {}).get('object') or {}
    if event_type == 'checkout.session.completed':
        _handle_checkout_completed(stripe_object)
    elif event_type == 'payment_intent.payment_failed':
        reason = (stripe_object.get('last_payment_error') or {}).get('message') or 'unknown reason'
        current_app.logger.warning(f"Payment failed for intent {stripe_object.get('id')}: {reason}")
    elif event_type == 'charge.refunded':
        _handle_charge_refunded(stripe_object)
    else:
        current_app.logger.info(f'Unhandled Stripe event type {event_type}.')
    return {'received': True}


@webhooks_bp.route('/generic/<provider>', methods=['POST'])
def generic_webhook(provider):
    if provider not in WEBHOOK_PROVIDERS:
        return error_response('Unknown webhook provider', 404)
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        event_type = clean_text(payload.get('type') or payload.get('event') or 'event', 60)
    elif isinstance(payload, list):
        # SendGrid batches several events per delivery.
        event_type = 'batch'
        payload = {'events': payload}
    else:
        event_type = 'raw'
        payload = {'raw': request.get_data(as_text=True)[:MAX_RAW_WEBHOOK_BODY]}
    log = start_log(provider, f'webhook:{event_type}', payload)
    mark_success(log, {'received': True}, 200, 0)
    db.session.commit()
    current_app.logger.info(f'{provider} webhook received: {event_type}.')
    return {'received': True}
