import os
import secrets
from decimal import Decimal

from flask import current_app

from . import content
from .models import (
    INTEGRATION_MODE_API,
    INTEGRATION_PROVIDERS,
    PROVIDER_RINGCENTRAL,
    PROVIDER_SUITEDASH,
    ROLE_SUPER_ADMIN,
    SERVICE_TYPE_ONE_OFF,
    SERVICE_TYPE_SUBSCRIPTION,
    Faq,
    IntegrationSetting,
    Pillar,
    Service,
    User,
    db,
)

PILLARS = [
    {
        'name': 'Business Consultancy',
        'slug': 'business-consultancy',
        'tagline': 'Strategic guidance for sustainable growth',
        'description': (
            'We partner with organisations to navigate complex challenges, develop robust strategies, '
            'and implement solutions that drive measurable results. Our evidence-based approach combines '
            'academic rigour with practical expertise.'
        ),
        'icon': 'briefcase',
        'sort_order': 1,
    },
    {
        'name': 'Education Support',
        'slug': 'education-support',
        'tagline': 'Empowering academic excellence',
        'description': (
            'We provide comprehensive support for educational institutions and learners at all levels. '
            'From curriculum development to individual tutoring, our services are designed to foster '
            'genuine understanding and lasting achievement.'
        ),
        'icon': 'academic-cap',
        'sort_order': 2,
    },
]

# (pillar slug, type, title, slug, summary, icon, price_from, price_label, featured)
SERVICES = [
    ('business-consultancy', SERVICE_TYPE_ONE_OFF, 'Strategic Assessment', 'strategic-assessment',
     'A comprehensive evaluation of your current position, market dynamics, and strategic options.',
     'chart-bar', '2500.00', 'From £2,500', False),
    ('business-consultancy', SERVICE_TYPE_ONE_OFF, 'Process Optimisation Review', 'process-optimisation-review',
     'Identify inefficiencies and opportunities for improvement across your key business processes.',
     'cog', '1800.00', 'From £1,800', False),
    ('business-consultancy', SERVICE_TYPE_ONE_OFF, 'Market Entry Analysis', 'market-entry-analysis',
     'Research-backed insights to inform your expansion into new markets or segments.',
     'globe', '3000.00', 'From £3,000', False),
    ('business-consultancy', SERVICE_TYPE_SUBSCRIPTION, 'Strategic Advisory Retainer', 'strategic-advisory-retainer',
     'Ongoing strategic counsel with regular touchpoints and on-demand support.',
     'users', '1500.00', 'From £1,500/month', True),
    ('business-consultancy', SERVICE_TYPE_SUBSCRIPTION, 'Performance Monitoring Programme', 'performance-monitoring-programme',
     'Continuous tracking and analysis of key performance indicators with regular reporting.',
     'presentation-chart-line', '800.00', 'From £800/month', False),
    ('education-support', SERVICE_TYPE_ONE_OFF, 'Curriculum Review', 'curriculum-review',
     'Expert evaluation of curriculum design, content alignment, and pedagogical effectiveness.',
     'document-text', '1500.00', 'From £1,500', False),
    ('education-support', SERVICE_TYPE_ONE_OFF, 'Assessment Design Workshop', 'assessment-design-workshop',
     'Collaborative workshop to develop effective assessment strategies aligned with learning objectives.',
     'clipboard-check', '950.00', 'From £950', False),
    ('education-support', SERVICE_TYPE_ONE_OFF, 'Academic Writing Intensive', 'academic-writing-intensive',
     'Structured programme to develop advanced academic writing skills for researchers and students.',
     'pencil', '600.00', 'From £600', False),
    ('education-support', SERVICE_TYPE_SUBSCRIPTION, 'Academic Tutoring Programme', 'academic-tutoring-programme',
     'Regular one-to-one tutoring sessions tailored to individual learning needs.',
     'user-group', '200.00', 'From £200/month', True),
    ('education-support', SERVICE_TYPE_SUBSCRIPTION, 'Institutional Partnership', 'institutional-partnership',
     'Comprehensive support package for educational institutions seeking ongoing enhancement.',
     'building-library', '0.00', 'Custom pricing', False),
]

# (pillar slug or None for global, category, question, answer)
FAQS = [
    (None, 'general', 'How do I get started?',
     "Simply contact us through our website or give us a call. We'll arrange an initial consultation to "
     "understand your needs and discuss how we can help."),
    (None, 'payments', 'What are your payment terms?',
     'For one-off projects, we typically request 50% upon commencement and 50% upon completion. Subscription '
     'services are billed monthly in advance. We accept bank transfer and major credit cards.'),
    (None, 'general', 'Do you offer remote services?',
     'Yes, many of our services can be delivered remotely. We use secure video conferencing and collaboration '
     'tools to work effectively with clients regardless of location.'),
    ('business-consultancy', 'services', 'What industries do you specialise in?',
     'While our methodologies are applicable across sectors, we have particular expertise in professional '
     'services, technology, healthcare, and education.'),
    ('business-consultancy', 'services', 'How long does a typical strategic assessment take?',
     'A standard Strategic Assessment typically takes 4-6 weeks from initiation to final report delivery.'),
    ('business-consultancy', 'services', 'Can you help with implementation, not just strategy?',
     'Absolutely. We offer implementation support through our subscription services and can provide hands-on '
     'assistance to ensure recommendations translate into real results.'),
    ('education-support', 'services', 'What age groups do you support?',
     'Our services span all educational levels, from primary through to postgraduate and professional education.'),
    ('education-support', 'services', 'Are your tutors qualified teachers?',
     'All our tutors hold relevant academic qualifications and have substantial experience in education.'),
    ('education-support', 'services', 'How do you measure student progress?',
     'We conduct regular assessments and provide detailed progress reports.'),
]


def _seed_admin():
    env_password = os.environ.get('ADMIN_PASSWORD') or ''
    admin_email = (current_app.config.get('ADMIN_EMAIL') or 'admin@consultancy.com').strip().lower()
    admin = User.query.filter_by(email=admin_email).first()
    if admin is not None:
        # Always sync admin password with env var on startup
        if env_password and not admin.check_password(env_password):
            admin.set_password(env_password)
        return admin

    if not env_password:
        env_password = secrets.token_urlsafe(16)
        current_app.logger.warning(
            'ADMIN_PASSWORD not set. Seeded admin with a random password. '
            'Set ADMIN_PASSWORD and restart to rotate it to a known value.'
        )
    admin = User(
        name=current_app.config.get('ADMIN_NAME') or 'Admin User',
        email=admin_email,
        role=ROLE_SUPER_ADMIN,
    )
    admin.set_password(env_password)
    db.session.add(admin)
    return admin


def _seed_catalogue():
    if Pillar.query.first() is not None:
        return
    pillars = {}
    for data in PILLARS:
        pillar = Pillar(**data)
        db.session.add(pillar)
        pillars[pillar.slug] = pillar
    db.session.flush()

    for index, (pillar_slug, service_type, title, slug, summary, icon, price, label, featured) in enumerate(SERVICES):
        db.session.add(Service(
            pillar_id=pillars[pillar_slug].id,
            type=service_type,
            title=title,
            slug=slug,
            summary=summary,
            icon=icon,
            price_from=Decimal(price),
            price_label=label,
            sort_order=index + 1,
            is_featured=featured,
        ))

    for index, (pillar_slug, category, question, answer) in enumerate(FAQS):
        db.session.add(Faq(
            pillar_id=pillars[pillar_slug].id if pillar_slug else None,
            category=category,
            question=question,
            answer=answer,
            sort_order=index + 1,
        ))


def _seed_integrations():
    config = current_app.config
    configured = {
        PROVIDER_SUITEDASH: bool(config.get('SUITEDASH_PUBLIC_ID') and config.get('SUITEDASH_SECRET_KEY')),
        PROVIDER_RINGCENTRAL: bool(config.get('RINGCENTRAL_CLIENT_ID') and config.get('RINGCENTRAL_JWT_TOKEN')),
    }
    for provider in INTEGRATION_PROVIDERS:
        if IntegrationSetting.query.filter_by(provider=provider).first() is None:
            db.session.add(IntegrationSetting(
                provider=provider,
                is_enabled=configured[provider],
                mode=INTEGRATION_MODE_API,
            ))


def seed_database():
    """Idempotent: only missing rows are created, existing data is left alone."""
    _seed_admin()
    for key in content.DEFAULT_CONTENT:
        content.seed_section(key)
    _seed_catalogue()
    _seed_integrations()
    db.session.commit()
