"""Key/value content store for CMS sections and settings.

Every section is one SiteSetting row holding a JSON object. Admin writes are
deep-merged over the stored value, which is itself read over the defaults
below, so a partially populated database always yields a complete document.
"""
import copy
import json
from datetime import datetime, timezone

from .errors import FieldErrors
from .models import SiteSetting, db
from .theme import DEFAULT_THEME, merge_theme, normalize_theme
from .utils import clean_text, is_hex_color, parse_bool, parse_int

SECTION_SETTINGS = 'settings'
SECTION_HEADER = 'header'
SECTION_FOOTER = 'footer'
SECTION_HOME = 'home'
SECTION_ABOUT = 'about'
SECTION_CONTACT = 'contact'
SECTION_THEME = 'theme'
SECTION_WEBSITE = 'website_settings'
SECTION_SYSTEM = 'system_settings'
PAGE_SECTIONS = (SECTION_HOME, SECTION_ABOUT, SECTION_CONTACT)
CONTENT_SECTIONS = (SECTION_SETTINGS, SECTION_HEADER, SECTION_FOOTER) + PAGE_SECTIONS
MAX_STRING_LENGTH = 5000
MAX_LIST_LENGTH = 50
MAX_LOGO_DATA_URL_LENGTH = 500_000

DEFAULT_CONTENT = {
    SECTION_SETTINGS: {
        'site_name': 'Consultancy Platform',
        'tagline': 'Strategic guidance for meaningful growth',
        'email': 'info@consultancy.com',
        'phone': '+44 (0) 123 456 7890',
        'address': '123 Academic Lane\nLondon, EC1A 1BB',
        'linkedin_url': 'https://linkedin.com',
        'twitter_url': 'https://twitter.com',
        'logo': None,
        'favicon': None,
    },
    SECTION_HEADER: {
        'logo_text': 'Consultancy',
        'logo_image': None,
        'nav_links': [
            {'id': 1, 'label': 'Home', 'path': '/', 'is_active': True, 'order': 1},
            {'id': 2, 'label': 'Business Consultancy', 'path': '/business-consultancy', 'is_active': True, 'order': 2},
            {'id': 3, 'label': 'Education Support', 'path': '/education-support', 'is_active': True, 'order': 3},
            {'id': 4, 'label': 'About', 'path': '/about', 'is_active': True, 'order': 4},
            {'id': 5, 'label': 'Contact', 'path': '/contact', 'is_active': True, 'order': 5},
        ],
    },
    SECTION_FOOTER: {
        'brand_description': 'Expert guidance in business strategy and education support, combining academic rigour with practical expertise.',
        'quick_links': [
            {'id': 1, 'label': 'Home', 'path': '/', 'is_active': True},
            {'id': 2, 'label': 'Business Consultancy', 'path': '/business-consultancy', 'is_active': True},
            {'id': 3, 'label': 'Education Support', 'path': '/education-support', 'is_active': True},
            {'id': 4, 'label': 'About Us', 'path': '/about', 'is_active': True},
            {'id': 5, 'label': 'Contact', 'path': '/contact', 'is_active': True},
        ],
        'legal_links': [
            {'label': 'Privacy Policy', 'path': '/privacy-policy'},
            {'label': 'Terms of Service', 'path': '/terms'},
        ],
        'social_links': [
            {'id': 1, 'platform': 'linkedin', 'url': 'https://linkedin.com', 'is_active': True},
            {'id': 2, 'platform': 'twitter', 'url': 'https://twitter.com', 'is_active': True},
        ],
        'copyright_text': '© {year} Consultancy Platform. All rights reserved.',
    },
    SECTION_HOME: {
        'hero': {
            'title': 'Strategic guidance for meaningful growth',
            'subtitle': 'We partner with organisations and individuals to navigate complexity, develop robust strategies, and achieve lasting success through evidence-based approaches.',
            'cta_text': 'Get in touch',
            'cta_link': '/contact',
            'secondary_cta_text': 'Learn more',
            'secondary_cta_link': '/about',
            'background_image': 'https://images.unsplash.com/photo-1497366216548-37526070297c?auto=format&fit=crop&w=2000&q=80',
        },
        'pillars_section': {
            'title': 'Our Expertise',
            'subtitle': 'Two distinct pillars of service, united by a commitment to excellence and evidence-based practice.',
        },
        'faq_section': {
            'title': 'Frequently Asked Questions',
            'subtitle': 'Find answers to common questions about our services.',
            'show_on_home': True,
            'limit': 6,
        },
        'cta_section': {
            'title': 'Ready to begin?',
            'subtitle': 'Contact us today to discuss how we can support your goals and help you achieve meaningful, sustainable outcomes.',
            'button_text': 'Contact us',
            'button_link': '/contact',
        },
    },
    SECTION_ABOUT: {
        'hero': {
            'title': 'About Us',
            'subtitle': 'We are a team of experienced consultants and educators dedicated to helping organisations and individuals achieve their potential through thoughtful, evidence-based guidance.',
            'background_image': 'https://images.unsplash.com/photo-1521737711867-e3b97375f902?auto=format&fit=crop&w=2000&q=80',
        },
        'mission': {
            'title': 'Our Mission',
            'content': 'To bridge the gap between academic insight and practical application, providing organisations and learners with the strategic guidance they need to navigate complexity and achieve meaningful outcomes.',
            'additional_content': 'We believe that the best solutions emerge from a combination of rigorous analysis, deep expertise, and genuine collaboration.',
        },
        'values': {
            'title': 'Our Values',
            'subtitle': 'The principles that guide our work and define our approach to every engagement.',
            'items': [
                {'icon': 'Target', 'title': 'Evidence-Based', 'description': 'We ground our recommendations in rigorous analysis and proven methodologies.', 'order': 1},
                {'icon': 'Users', 'title': 'Collaborative', 'description': 'We work alongside our clients as partners, bringing expertise while respecting your knowledge.', 'order': 2},
                {'icon': 'Lightbulb', 'title': 'Practical', 'description': 'Academic rigour meets real-world application. Our solutions work in practice.', 'order': 3},
                {'icon': 'Award', 'title': 'Excellence', 'description': 'We hold ourselves to the highest standards in everything we do.', 'order': 4},
            ],
        },
        'approach': {
            'title': 'Our Approach',
            'paragraphs': [
                'We begin every engagement by listening carefully to understand your specific context, challenges, and aspirations.',
                'Our methodology draws on established frameworks and best practices, adapted thoughtfully to fit your situation.',
                'We measure success not just by the quality of our recommendations, but by the real-world outcomes they help you achieve.',
            ],
            'process_title': 'Our Process',
            'process_steps': [
                {'step': '01', 'title': 'Understand', 'description': 'Deep discovery to understand your context and goals'},
                {'step': '02', 'title': 'Analyse', 'description': 'Rigorous assessment using proven methodologies'},
                {'step': '03', 'title': 'Strategise', 'description': 'Develop tailored recommendations and roadmap'},
                {'step': '04', 'title': 'Implement', 'description': 'Support execution with hands-on guidance'},
                {'step': '05', 'title': 'Evaluate', 'description': 'Measure outcomes and refine approach'},
            ],
        },
        'team': {
            'title': 'Our Team',
            'subtitle': 'Experienced professionals with diverse backgrounds in business, education, and research.',
            'members': [
                {'name': 'Team Member 1', 'position': 'Position Title', 'bio': 'Brief bio highlighting expertise and background.', 'image': '', 'order': 1},
                {'name': 'Team Member 2', 'position': 'Position Title', 'bio': 'Brief bio highlighting expertise and background.', 'image': '', 'order': 2},
                {'name': 'Team Member 3', 'position': 'Position Title', 'bio': 'Brief bio highlighting expertise and background.', 'image': '', 'order': 3},
            ],
        },
        'cta': {
            'title': "Let's work together",
            'subtitle': "Whether you're facing a strategic challenge or seeking to enhance educational outcomes, we're here to help.",
            'button_text': 'Get in touch',
            'button_link': '/contact',
        },
    },
    SECTION_CONTACT: {
        'hero': {
            'title': 'Contact Us',
            'subtitle': "We're here to help. Reach out to discuss how we can support your goals, or simply to learn more about our services.",
        },
        'contact_options': {
            'call': {'title': 'Call Us', 'subtitle': 'Speak directly with our team'},
            'email': {'title': 'Email Us', 'subtitle': 'Send us a message anytime'},
            'message': {'title': 'Message', 'subtitle': 'Quick text support', 'button_text': 'Send a message'},
        },
        'form': {'title': 'Send us a message'},
        'office_hours': {
            'title': 'Office Hours',
            'items': [
                {'day': 'Monday - Friday', 'hours': '9:00 AM - 6:00 PM GMT'},
                {'day': 'Saturday', 'hours': '10:00 AM - 2:00 PM GMT'},
                {'day': 'Sunday', 'hours': 'Closed'},
            ],
        },
        'response_time': {
            'title': 'Response Time',
            'text': 'We aim to respond to all enquiries within 24 business hours.',
        },
    },
    SECTION_WEBSITE: {
        'page_visibility': {
            'home': True,
            'about': True,
            'contact': True,
            'checkout': True,
        },
        'maintenance_mode': False,
        'maintenance_message': 'We are currently performing scheduled maintenance. Please check back soon.',
    },
    SECTION_SYSTEM: {
        'theme_mode': 'system',
        'accent_color': '#3b82f6',
        'sidebar_style': 'default',
        'primary_color': '#3b82f6',
        'secondary_color': '#8b5cf6',
        'dashboard_name': 'Admin',
        'dashboard_logo': None,
        'show_logo': True,
    },
    SECTION_THEME: DEFAULT_THEME,
}
THEME_MODES = ('dark', 'light', 'system')
SIDEBAR_STYLES = ('default', 'compact', 'minimal')
VISIBILITY_PAGES = ('home', 'about', 'contact', 'checkout')


def _clean_value(value, depth=0):
    if depth > 6:
        return None
    if isinstance(value, str):
        return value.strip()[:MAX_STRING_LENGTH]
    if isinstance(value, bool) or value is None or isinstance(value, (int, float)):
        return value
    if isinstance(value, list):
        return [_clean_value(item, depth + 1) for item in value[:MAX_LIST_LENGTH]]
    if isinstance(value, dict):
        return {clean_text(k, 80): _clean_value(v, depth + 1) for k, v in value.items() if clean_text(k, 80)}
    return clean_text(value, MAX_STRING_LENGTH)


def deep_merge(base, override):
    """Dicts merge recursively; lists and scalars in override replace the base value."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _load_raw(key):
    row = SiteSetting.query.filter_by(key=key).first()
    if row is None or not row.value:
        return {}
    try:
        value = json.loads(row.value)
    except (TypeError, json.JSONDecodeError):
        return {}
    return value if isinstance(value, dict) else {}


def _store_raw(key, value):
    row = SiteSetting.query.filter_by(key=key).first()
    if row is None:
        row = SiteSetting(key=key)
        db.session.add(row)
    row.value = json.dumps(value, ensure_ascii=False)
    db.session.commit()


def get_section(key):
    return deep_merge(DEFAULT_CONTENT.get(key, {}), _load_raw(key))


def save_section(key, payload):
    """Deep-merge a cleaned payload into the stored section and return the full document."""
    errors = FieldErrors()
    if not isinstance(payload, dict) or not payload:
        errors.add('body', 'A JSON object with at least one field is required.')
    errors.raise_if_any()
    stored = deep_merge(_load_raw(key), _clean_value(payload))
    _store_raw(key, stored)
    return get_section(key)


def seed_section(key):
    if SiteSetting.query.filter_by(key=key).first() is None:
        db.session.add(SiteSetting(key=key, value=json.dumps(DEFAULT_CONTENT[key], ensure_ascii=False)))


# Public views

def _by_order(items):
    if not isinstance(items, list):
        return []
    entries = [item for item in items if isinstance(item, dict)]
    return sorted(entries, key=lambda item: parse_int(item.get('order')))


def _active_sorted(links):
    return [link for link in _by_order(links) if link.get('is_active', True)]


def public_settings():
    settings = get_section(SECTION_SETTINGS)
    return {
        'site_name': settings.get('site_name'),
        'tagline': settings.get('tagline'),
        'email': settings.get('email'),
        'phone': settings.get('phone'),
        'address': settings.get('address'),
        'linkedin_url': settings.get('linkedin_url') or '',
        'twitter_url': settings.get('twitter_url') or '',
        'logo': settings.get('logo'),
        'favicon': settings.get('favicon'),
    }


def public_header():
    header = get_section(SECTION_HEADER)
    return {
        'logo_text': header.get('logo_text'),
        'logo_image': header.get('logo_image') or None,
        'nav_links': [{'to': link.get('path'), 'label': link.get('label')} for link in _active_sorted(header.get('nav_links'))],
    }


def public_footer():
    footer = get_section(SECTION_FOOTER)
    year = datetime.now(timezone.utc).year
    return {
        'brand_description': footer.get('brand_description'),
        'quick_links': [{'to': link.get('path'), 'label': link.get('label')} for link in _active_sorted(footer.get('quick_links'))],
        'legal_links': [{'to': link.get('path'), 'label': link.get('label')} for link in footer.get('legal_links') or [] if isinstance(link, dict)],
        'social_links': [
            {'platform': link.get('platform'), 'url': link.get('url')}
            for link in _active_sorted(footer.get('social_links'))
        ],
        'copyright_text': str(footer.get('copyright_text') or '').replace('{year}', str(year)),
    }


def public_page(key):
    page = get_section(key)
    if key == SECTION_ABOUT:
        values = page.get('values')
        if isinstance(values, dict):
            values['items'] = _by_order(values.get('items'))
        team = page.get('team')
        if isinstance(team, dict):
            team['members'] = _by_order(team.get('members'))
    if key == SECTION_CONTACT:
        settings = get_section(SECTION_SETTINGS)
        options = page.get('contact_options')
        if not isinstance(options, dict):
            options = page['contact_options'] = {}
        for option, field in (('call', 'phone'), ('email', 'email')):
            if not isinstance(options.get(option), dict):
                options[option] = {}
            options[option][field] = settings.get(field)
        page['address'] = {
            'title': 'Our Address',
            'lines': [line for line in str(settings.get('address') or '').split('\n') if line.strip()],
        }
    return page


# Theme

def get_theme():
    return normalize_theme(_load_raw(SECTION_THEME))


def save_theme(payload):
    theme = merge_theme(_load_raw(SECTION_THEME), payload)
    _store_raw(SECTION_THEME, theme)
    return theme


def reset_theme():
    _store_raw(SECTION_THEME, dict(DEFAULT_THEME))
    return dict(DEFAULT_THEME)


# Website and system settings

def get_website_settings():
    settings = get_section(SECTION_WEBSITE)
    settings['page_visibility']['home'] = True
    return settings


def save_website_settings(payload):
    errors = FieldErrors()
    if not isinstance(payload, dict):
        errors.add('body', 'A JSON object is required.')
        errors.raise_if_any()
    current = get_website_settings()
    visibility = payload.get('page_visibility')
    if visibility is not None:
        if not isinstance(visibility, dict):
            errors.add('page_visibility', 'Must be an object of page flags.')
        else:
            for page, flag in visibility.items():
                if page not in VISIBILITY_PAGES:
                    errors.add('page_visibility', f'Unknown page "{clean_text(page, 40)}".')
                    continue
                current['page_visibility'][page] = parse_bool(flag, default=True)
    if 'maintenance_mode' in payload:
        current['maintenance_mode'] = parse_bool(payload.get('maintenance_mode'))
    if 'maintenance_message' in payload:
        message = clean_text(payload.get('maintenance_message'), 500)
        if not message:
            errors.add('maintenance_message', 'Maintenance message cannot be empty.')
        current['maintenance_message'] = message
    errors.raise_if_any()
    # The home page is always reachable.
    current['page_visibility']['home'] = True
    _store_raw(SECTION_WEBSITE, current)
    return current


def get_system_settings():
    return get_section(SECTION_SYSTEM)


def save_system_settings(payload):
    errors = FieldErrors()
    if not isinstance(payload, dict):
        errors.add('body', 'A JSON object is required.')
        errors.raise_if_any()
    current = get_system_settings()
    if 'theme_mode' in payload:
        mode = clean_text(payload.get('theme_mode'), 20).lower()
        if mode not in THEME_MODES:
            errors.add('theme_mode', 'Must be one of dark, light or system.')
        current['theme_mode'] = mode
    if 'sidebar_style' in payload:
        style = clean_text(payload.get('sidebar_style'), 20).lower()
        if style not in SIDEBAR_STYLES:
            errors.add('sidebar_style', 'Must be one of default, compact or minimal.')
        current['sidebar_style'] = style
    for key in ('accent_color', 'primary_color', 'secondary_color'):
        if key in payload:
            color = clean_text(payload.get(key), 20)
            if not is_hex_color(color):
                errors.add(key, 'Must be a hex colour such as #3b82f6.')
            current[key] = color.lower()
    if 'dashboard_name' in payload:
        name = clean_text(payload.get('dashboard_name'), 60)
        if not name:
            errors.add('dashboard_name', 'Dashboard name is required.')
        current['dashboard_name'] = name
    if 'dashboard_logo' in payload:
        logo = clean_text(payload.get('dashboard_logo'), MAX_LOGO_DATA_URL_LENGTH)
        if logo and not logo.startswith(('https://', 'http://', '/', 'data:image/')):
            errors.add('dashboard_logo', 'Must be a URL, an upload path or an image data URL.')
        elif logo and not logo.startswith('data:image/') and len(logo) > 500:
            errors.add('dashboard_logo', 'Logo URL is too long.')
        current['dashboard_logo'] = logo or None
    if 'show_logo' in payload:
        current['show_logo'] = parse_bool(payload.get('show_logo'), default=True)
    errors.raise_if_any()
    _store_raw(SECTION_SYSTEM, current)
    return current
