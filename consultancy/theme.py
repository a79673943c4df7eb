"""Theme tokens and their CSS custom property rendering."""
import re

from .errors import FieldErrors
from .utils import is_hex_color

DEFAULT_THEME = {
    'primary_900': '#2c4a6e',
    'primary_800': '#3a5a7c',
    'primary_700': '#4a6a8c',
    'primary_600': '#2563a8',
    'primary_500': '#d1d5db',
    'primary_400': '#9ca3af',
    'primary_100': '#ffffff',
    'primary_50': '#f8fafc',
    'text_heading': '#1a1a2e',
    'text_subheading': '#2d2d44',
    'text_body': '#4a4a5a',
    'text_muted': '#9ca3af',
    'text_link_hover': '#2563eb',
    'accent_yellow': '#f4c430',
    'accent_yellow_light': '#fef9e7',
    'cta_primary_bg': '#f4c430',
    'cta_primary_text': '#1a1a2e',
    'cta_primary_hover': '#e6b62d',
    'font_heading': '"Source Serif 4", Georgia, serif',
    'font_body': 'Inter, -apple-system, sans-serif',
    'border_radius': '8px',
}
FONT_TOKENS = ('font_heading', 'font_body')
RADIUS_TOKEN = 'border_radius'
COLOR_TOKENS = tuple(key for key in DEFAULT_THEME if key not in FONT_TOKENS and key != RADIUS_TOKEN)
CSS_LENGTH_RE = re.compile(r"^(?:0|\d{1,3}(?:\.\d{1,2})?(?:px|rem|em|%))$")
UNSAFE_CSS_CHARS = ('{', '}', '<', '>', ';')


def _validate_token(key, value, errors):
    text = str(value if value is not None else '').strip()
    if key in COLOR_TOKENS:
        if not is_hex_color(text):
            errors.add(key, 'Must be a hex colour such as #1a2b3c.')
            return None
        return text.lower()
    if key in FONT_TOKENS:
        if not text or len(text) > 200 or any(ch in text for ch in UNSAFE_CSS_CHARS):
            errors.add(key, 'Must be a CSS font-family list.')
            return None
        return text
    if not CSS_LENGTH_RE.match(text):
        errors.add(key, 'Must be a CSS length such as 8px or 0.5rem.')
        return None
    return text


def normalize_theme(stored):
    """Stored values over defaults, silently dropping anything invalid or unknown."""
    theme = dict(DEFAULT_THEME)
    if not isinstance(stored, dict):
        return theme
    for key, value in stored.items():
        if key not in DEFAULT_THEME:
            continue
        errors = FieldErrors()
        cleaned = _validate_token(key, value, errors)
        if cleaned is not None:
            theme[key] = cleaned
    return theme


def merge_theme(stored, payload):
    """Merge a partial payload over the stored theme; invalid tokens raise ValidationError."""
    theme = normalize_theme(stored)
    if not isinstance(payload, dict):
        return theme
    errors = FieldErrors()
    for key, value in payload.items():
        if key not in DEFAULT_THEME:
            continue
        cleaned = _validate_token(key, value, errors)
        if cleaned is not None:
            theme[key] = cleaned
    errors.raise_if_any()
    return theme


def css_var_name(token):
    if token in FONT_TOKENS:
        return '--font-' + token[len('font_'):].replace('_', '-')
    if token == RADIUS_TOKEN:
        return '--radius'
    return '--color-' + token.replace('_', '-')


def theme_css_vars(theme):
    normalized = normalize_theme(theme)
    return {css_var_name(key): value for key, value in normalized.items()}


def render_theme_css(theme):
    lines = [f'  {name}: {value};' for name, value in theme_css_vars(theme).items()]
    return ':root {\n' + '\n'.join(lines) + '\n}\n'
