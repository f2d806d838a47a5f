"""
Input sanitization helpers.

Queries always go through SQLAlchemy bound parameters; these helpers only
normalize user text before it is stored or echoed back.
"""
import re
from urllib.parse import urlparse

_HTML_ESCAPES = {
    '&': '&amp;',
    '<': '&lt;',
    '>': '&gt;',
    '"': '&quot;',
    "'": '&#x27;',
    '/': '&#x2F;',
}
_HTML_CHARS = re.compile(r'[&<>"\'/]')
_USERNAME_DISALLOWED = re.compile(r'[^a-zA-Z0-9_]')
_FILENAME_DISALLOWED = re.compile(r'[^a-zA-Z0-9._-]')
_TAGS = re.compile(r'<[^>]*>')
_SEARCH_BLOCKLIST = [';', '--', 'xp_', 'sp_', 'DROP', 'SELECT', 'INSERT', 'UPDATE',
                     'DELETE', 'CREATE', 'ALTER', 'EXEC']


def sanitize_html(text: str) -> str:
    return _HTML_CHARS.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)


def sanitize_username(username: str) -> str:
    return _USERNAME_DISALLOWED.sub('', username)


def sanitize_email(email: str) -> str:
    return email.strip().lower()


def sanitize_search_query(query: str) -> str:
    sanitized = query
    for term in _SEARCH_BLOCKLIST:
        sanitized = re.sub(re.escape(term), '', sanitized, flags=re.IGNORECASE)
    return sanitized.strip()


def sanitize_url(url: str) -> str | None:
    """Return the URL when it is an absolute http(s) URL, else None."""
    try:
        parsed = urlparse(url.strip())
    except (ValueError, AttributeError):
        return None
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return parsed.geturl()


def sanitize_file_name(file_name: str) -> str:
    cleaned = file_name.replace('../', '').replace('\\', '/')
    return _FILENAME_DISALLOWED.sub('_', cleaned)


def strip_html(html: str) -> str:
    return _TAGS.sub('', html)
