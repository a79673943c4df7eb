"""Stripe checkout, refunds and webhook verification.

When no STRIPE_SECRET_KEY is configured every call falls back to a mock
result so that checkout can be exercised end to end in development.
"""
import json

import stripe
from flask import current_app

from .utils import to_pence


def stripe_enabled():
    return bool(current_app.config.get('STRIPE_SECRET_KEY'))


def init_stripe(app):
    secret_key = app.config.get('STRIPE_SECRET_KEY')
    stripe.api_key = secret_key or None
    if not secret_key:
        app.logger.info('STRIPE_SECRET_KEY is not configured; checkout runs in mock mode.')


def _frontend_url():
    return (current_app.config.get('FRONTEND_URL') or 'http://localhost:5173').rstrip('/')


def create_checkout_session(order):
    frontend = _frontend_url()
    if not stripe_enabled():
        current_app.logger.info(f'Mock checkout session created for order {order.order_number}.')
        return {
            'id': f'mock_session_{order.id}',
            'url': f'{frontend}/checkout/success?session_id=mock_{order.id}',
            'mock': True,
        }

    currency = current_app.config.get('STRIPE_CURRENCY', 'gbp')
    line_items = [
        {
            'price_data': {
                'currency': currency,
                'product_data': {'name': item.title},
                'unit_amount': to_pence(item.unit_price),
            },
            'quantity': item.quantity,
        }
        for item in order.items
    ]
    if order.tax:
        line_items.append({
            'price_data': {
                'currency': currency,
                'product_data': {'name': 'VAT'},
                'unit_amount': to_pence(order.tax),
            },
            'quantity': 1,
        })
    session = stripe.checkout.Session.create(
        mode='payment',
        payment_method_types=['card'],
        line_items=line_items,
        customer_email=order.customer_email,
        billing_address_collection='required',
        success_url=f'{frontend}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}',
        cancel_url=f'{frontend}/checkout/cancel',
        metadata={'orderId': str(order.id), 'orderNumber': order.order_number},
    )
    return {'id': session.id, 'url': session.url, 'mock': False}


def parse_webhook_event(payload, sig_header):
    """Return the event as a mapping; raises ValueError or SignatureVerificationError."""
    webhook_secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
    body = payload.decode('utf-8') if isinstance(payload, bytes) else (payload or '')
    if webhook_secret:
        stripe.WebhookSignature.verify_header(body, sig_header or '', webhook_secret)
    event = json.loads(body)
    if not isinstance(event, dict) or 'type' not in event:
        raise ValueError('Webhook payload is not a Stripe event.')
    return event


def find_session_for_payment_intent(payment_intent_id):
    """Checkout session id that produced a payment intent, when Stripe knows it."""
    if not stripe_enabled() or not payment_intent_id:
        return None
    sessions = stripe.checkout.Session.list(payment_intent=payment_intent_id, limit=1)
    return sessions.data[0].id if sessions.data else None
