"""Free-text sanitization for anything that reaches the processor or stored metadata."""
from __future__ import annotations

import html
import re
from typing import Any, Mapping, Optional

NOTES_MAX_LENGTH = 500
NAME_MAX_LENGTH = 100
ADDRESS_MAX_LENGTH = 200
EMAIL_MAX_LENGTH = 254

ADDRESS_FIELDS = ("name", "line1", "line2", "city", "state", "postal_code", "country")

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_text(value: Optional[Any], max_length: int) -> str:
    """Strip HTML tags and angle brackets, trim, and cap length."""
    if value is None:
        return ""
    text = str(value)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    # Unescaping may surface new brackets; drop any that remain
    text = text.replace("<", "").replace(">", "")
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:max_length].rstrip()


def sanitize_notes(notes: Optional[str]) -> str:
    return sanitize_text(notes, NOTES_MAX_LENGTH)


def sanitize_name(name: Optional[str]) -> str:
    return sanitize_text(name, NAME_MAX_LENGTH)


def sanitize_email(email: Optional[str]) -> Optional[str]:
    return sanitize_text(email, EMAIL_MAX_LENGTH) or None


def sanitize_address(address: Optional[Mapping[str, Any]]) -> Optional[dict[str, str]]:
    """Keep known address fields only, each sanitized and capped.

    Returns None when nothing usable remains.
    """
    if not address:
        return None
    cleaned: dict[str, str] = {}
    for key in ADDRESS_FIELDS:
        limit = NAME_MAX_LENGTH if key == "name" else ADDRESS_MAX_LENGTH
        value = sanitize_text(address.get(key), limit)
        if value:
            cleaned[key] = value
    return cleaned or None
