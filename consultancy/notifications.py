import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from flask import current_app
from markupsafe import Markup, escape

from .models import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_IN_PROGRESS,
    ORDER_STATUS_LABELS,
)
from .utils import format_gbp

SENDGRID_SMTP_HOST = 'smtp.sendgrid.net'
SENDGRID_SMTP_PORT = 587
SENDGRID_SMTP_USERNAME = 'apikey'
ORDER_STATUS_MESSAGES = {
    ORDER_STATUS_CONFIRMED: 'Your order has been confirmed and is being processed.',
    ORDER_STATUS_IN_PROGRESS: 'We have started working on your order.',
    ORDER_STATUS_COMPLETED: 'Your order has been completed. Thank you for your business!',
    ORDER_STATUS_CANCELLED: 'Your order has been cancelled. If you have any questions, please contact us.',
}


def _safe_header_value(value, max_length=240):
    # Prevent header injection by stripping CR/LF and collapsing whitespace.
    cleaned = ' '.join((value or '').replace('\r', ' ').replace('\n', ' ').split())
    return cleaned[:max_length]


def _smtp_transport():
    """SendGrid in production, the configured SMTP host (Ethereal in development) otherwise."""
    config = current_app.config
    if config.get('APP_ENV') == 'production' and config.get('SENDGRID_API_KEY'):
        return {
            'host': SENDGRID_SMTP_HOST,
            'port': SENDGRID_SMTP_PORT,
            'username': SENDGRID_SMTP_USERNAME,
            'password': config['SENDGRID_API_KEY'],
            'use_tls': True,
            'use_ssl': False,
        }
    host = (config.get('SMTP_HOST') or '').strip()
    if not host:
        return None
    return {
        'host': host,
        'port': int(config.get('SMTP_PORT') or 587),
        'username': config.get('SMTP_USERNAME') or '',
        'password': config.get('SMTP_PASSWORD') or '',
        'use_tls': bool(config.get('SMTP_USE_TLS')),
        'use_ssl': bool(config.get('SMTP_USE_SSL')),
    }


def _render_html(title, body_html):
    site_name = escape(current_app.config.get('EMAIL_FROM_NAME') or 'Consultancy Platform')
    return Markup(
        '<!DOCTYPE html><html><body style="margin:0;padding:0;background:#f8fafc;'
        'font-family:Inter,-apple-system,sans-serif;color:#4a4a5a;">'
        '<table width="100%" cellpadding="0" cellspacing="0"><tr><td align="center" style="padding:24px;">'
        '<table width="600" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:8px;">'
        '<tr><td style="background:#2c4a6e;color:#ffffff;padding:20px 24px;font-size:20px;">{site}</td></tr>'
        '<tr><td style="padding:24px;"><h1 style="color:#1a1a2e;font-size:22px;margin-top:0;">{title}</h1>{body}</td></tr>'
        '<tr><td style="padding:16px 24px;font-size:12px;color:#9ca3af;">{site}</td></tr>'
        '</table></td></tr></table></body></html>'
    ).format(site=site_name, title=title, body=body_html)


def _send_via_smtp(message, transport):
    if transport['use_ssl']:
        smtp = smtplib.SMTP_SSL(host=transport['host'], port=transport['port'], timeout=12)
    else:
        smtp = smtplib.SMTP(host=transport['host'], port=transport['port'], timeout=12)
    with smtp:
        if transport['use_tls'] and not transport['use_ssl']:
            smtp.starttls()
        if transport['username'] and transport['password']:
            smtp.login(transport['username'], transport['password'])
        smtp.send_message(message)


def send_email(to, subject, text_body, html_body=None):
    """Send one message; never raises, returns {success, message_id} or {success, error}."""
    recipient = _safe_header_value(to, max_length=320)
    if not recipient:
        return {'success': False, 'error': 'No recipient'}
    if not current_app.config.get('EMAIL_ENABLED', True):
        return {'success': False, 'error': 'Email disabled'}
    transport = _smtp_transport()
    if transport is None:
        current_app.logger.info('No email transport configured (set SENDGRID_API_KEY or SMTP_HOST).')
        return {'success': False, 'error': 'Email transport not configured'}

    mail_from = formataddr((
        _safe_header_value(current_app.config.get('EMAIL_FROM_NAME') or '', max_length=120),
        _safe_header_value(current_app.config.get('EMAIL_FROM') or 'noreply@localhost', max_length=254),
    ))
    message = EmailMessage()
    message['Subject'] = _safe_header_value(subject)
    message['From'] = mail_from
    message['To'] = recipient
    message_id = make_msgid(domain=(current_app.config.get('EMAIL_FROM') or 'localhost').split('@')[-1])
    message['Message-ID'] = message_id
    message.set_content(text_body)
    if html_body:
        message.add_alternative(str(html_body), subtype='html')

    try:
        _send_via_smtp(message, transport)
    except Exception as error:
        current_app.logger.exception(f'Email delivery failed: {subject}')
        return {'success': False, 'error': str(error)}
    current_app.logger.info(f'Email sent: {subject}')
    return {'success': True, 'message_id': message_id}


def send_contact_notification(submission):
    admin_email = current_app.config.get('ADMIN_EMAIL')
    subject = f"New contact form submission from {submission.name}"
    rows = [
        ('Name', submission.name),
        ('Email', submission.email),
        ('Phone', submission.phone or 'Not provided'),
        ('Subject', submission.subject or 'Not provided'),
        ('Pillar', submission.pillar.name if submission.pillar else 'General'),
    ]
    text = "\n".join(
        ["A new contact form submission has been received.", ""]
        + [f"{label}: {value}" for label, value in rows]
        + ["", "Message:", submission.message or ""]
    )
    table = Markup('').join(
        Markup('<tr><td style="padding:4px 12px 4px 0;"><strong>{}</strong></td><td>{}</td></tr>').format(label, value)
        for label, value in rows
    )
    body = Markup('<table>{}</table><p><strong>Message:</strong></p><p>{}</p>').format(table, submission.message or '')
    return send_email(admin_email, subject, text, _render_html('New contact submission', body))


def send_contact_confirmation(submission):
    subject = 'We received your message'
    text = "\n".join([
        f"Hi {submission.name},",
        "",
        "Thank you for getting in touch. We aim to respond to all enquiries within 24 business hours.",
        "",
        "Your message:",
        submission.message or "",
    ])
    body = Markup(
        '<p>Hi {name},</p><p>Thank you for getting in touch. We aim to respond to all enquiries '
        'within 24 business hours.</p><blockquote style="border-left:3px solid #d1d5db;padding-left:12px;">{message}</blockquote>'
    ).format(name=submission.name, message=submission.message or '')
    return send_email(submission.email, subject, text, _render_html('Thanks for contacting us', body))


def _order_items_html(order):
    rows = Markup('').join(
        Markup('<tr><td style="padding:6px 0;">{title}</td><td align="center">{qty}</td><td align="right">{price}</td></tr>').format(
            title=item.title,
            qty=item.quantity,
            price=format_gbp(item.line_total),
        )
        for item in order.items
    )
    totals = Markup(
        '<tr><td colspan="2" align="right">Subtotal</td><td align="right">{subtotal}</td></tr>'
        '<tr><td colspan="2" align="right">VAT</td><td align="right">{tax}</td></tr>'
        '<tr><td colspan="2" align="right"><strong>Total</strong></td><td align="right"><strong>{total}</strong></td></tr>'
    ).format(subtotal=format_gbp(order.subtotal), tax=format_gbp(order.tax), total=format_gbp(order.total))
    return Markup(
        '<table width="100%" cellpadding="0" cellspacing="0"><tr><th align="left">Service</th>'
        '<th>Qty</th><th align="right">Price</th></tr>{rows}{totals}</table>'
    ).format(rows=rows, totals=totals)


def send_order_confirmation(order):
    subject = f"Order confirmation: {order.order_number}"
    lines = [f"Hi {order.customer_name},", "", f"Thank you for your order {order.order_number}.", ""]
    lines += [f"- {item.title} x{item.quantity}: {format_gbp(item.line_total)}" for item in order.items]
    lines += [
        "",
        f"Subtotal: {format_gbp(order.subtotal)}",
        f"VAT: {format_gbp(order.tax)}",
        f"Total: {format_gbp(order.total)}",
    ]
    pay_link = Markup('')
    if order.payment_url and order.payment_status == 'unpaid':
        lines += ["", f"Pay now: {order.payment_url}"]
        pay_link = Markup(
            '<p style="margin-top:24px;"><a href="{url}" style="background:#f4c430;color:#1a1a2e;'
            'padding:12px 20px;border-radius:8px;text-decoration:none;">Pay Now</a></p>'
        ).format(url=order.payment_url)
    body = Markup('<p>Hi {name},</p><p>Thank you for your order <strong>{number}</strong>.</p>{items}{pay}').format(
        name=order.customer_name,
        number=order.order_number,
        items=_order_items_html(order),
        pay=pay_link,
    )
    return send_email(order.customer_email, subject, "\n".join(lines), _render_html('Order confirmation', body))


def send_order_status_update(order):
    message = ORDER_STATUS_MESSAGES.get(order.status)
    if not message:
        return {'success': False, 'error': f'No notification for status {order.status}'}
    label = ORDER_STATUS_LABELS.get(order.status, order.status)
    subject = f"Order {order.order_number} update: {label}"
    text = "\n".join([f"Hi {order.customer_name},", "", message, "", f"Order number: {order.order_number}"])
    body = Markup('<p>Hi {name},</p><p>{message}</p><p>Order number: <strong>{number}</strong></p>').format(
        name=order.customer_name,
        message=message,
        number=order.order_number,
    )
    return send_email(order.customer_email, subject, text, _render_html(f'Order {label}', body))


def send_password_reset(user, reset_url):
    subject = 'Reset your password'
    text = "\n".join([
        f"Hi {user.name},",
        "",
        "Use the link below to reset your password. The link expires in one hour.",
        reset_url,
        "",
        "If you did not request a reset, you can ignore this email.",
    ])
    body = Markup(
        '<p>Hi {name},</p><p>Use the link below to reset your password. The link expires in one hour.</p>'
        '<p><a href="{url}">Reset password</a></p><p>If you did not request a reset, you can ignore this email.</p>'
    ).format(name=user.name, url=reset_url)
    return send_email(user.email, subject, text, _render_html('Password reset', body))


def send_welcome_email(user):
    site_name = current_app.config.get('EMAIL_FROM_NAME') or 'Consultancy Platform'
    subject = f"Welcome to {site_name}"
    text = "\n".join([f"Hi {user.name},", "", f"Your {site_name} account is ready."])
    body = Markup('<p>Hi {name},</p><p>Your {site} account is ready.</p>').format(name=user.name, site=site_name)
    return send_email(user.email, subject, text, _render_html('Welcome', body))
