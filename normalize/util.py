"""
Normalization utility helpers.
Small helpers shared by the ingest, identity and aggregation layers: timestamp
parsing/formatting and login slugs.
"""
import re
from datetime import datetime, timezone
from typing import Optional, Any

_NON_LOGIN_CHARS = re.compile(r'[^a-z0-9-]+')
_NOREPLY_EMAIL = re.compile(r'^(?:\d+\+)?([^@+]+)@users\.noreply\.github\.com$', re.IGNORECASE)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (GitHub or git strict format) into an aware datetime.
    Returns None for empty values. Naive values are assumed to be UTC.
    """
    if raw is None or raw == '':
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    text = str(raw).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def noreply_login(email: str) -> str:
    """Return the login encoded in a GitHub noreply address, or '' when the address is not one."""
    m = _NOREPLY_EMAIL.match((email or '').strip())
    return m.group(1) if m else ''


def slugify_login(name: str) -> str:
    """Lowercase a display name and collapse characters that cannot appear in a login into '-'."""
    slug = _NON_LOGIN_CHARS.sub('-', (name or '').strip().lower())
    return slug.strip('-')


def extract_login(email: str, name: str) -> str:
    """Best-effort login for a raw git identity.
    Prefers the login encoded in a noreply email, otherwise falls back to a slug of the name.
    """
    login = noreply_login(email)
    if login:
        return login
    return slugify_login(name)


def normalize_for_comparison(value: str) -> str:
    """Keep only lowercase letters and digits so 'Jane Doe', 'jane-doe' and 'janedoe' compare equal."""
    return ''.join(ch for ch in (value or '').lower() if ch.isalnum())


def hours(seconds: Optional[float]) -> float:
    if seconds is None:
        return 0.0
    return float(seconds) / 3600.0
