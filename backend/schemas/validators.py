"""Shared Pydantic validators.

Keep these small and dependency-free so schema modules can reuse them without
introducing import cycles.
"""

import re
import unicodedata
from typing import Any


HTML_TAG_PATTERN = re.compile(r"<[^>]+>")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ()\-]{5,30}$")


def strip_html_tags(text: str) -> str:
    """Strip HTML tags from text to prevent XSS injection in free text fields."""
    if not isinstance(text, str):
        return text
    return HTML_TAG_PATTERN.sub("", text)


def strip_invisible_edges(value: str) -> str:
    """
    Strip leading/trailing whitespace and Unicode format characters (Cf).

    This prevents visually-identical emails like "\\u200bjo@example.com" from
    bypassing uniqueness checks.
    """
    if not isinstance(value, str):
        return value
    start = 0
    end = len(value)
    while start < end and (
        value[start].isspace() or unicodedata.category(value[start]) == "Cf"
    ):
        start += 1
    while end > start and (
        value[end - 1].isspace() or unicodedata.category(value[end - 1]) == "Cf"
    ):
        end -= 1
    return value[start:end]


def ensure_utf8_encodable(value: str) -> str:
    """
    Reject strings that cannot be encoded to UTF-8 (e.g., unpaired surrogates).

    Unpaired surrogates can enter the system via JSON escape sequences like
    "\\uD800" and later crash JSON serialization.
    """
    if not isinstance(value, str):
        return value
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError("Text contains invalid Unicode characters")
    return value


def normalize_email(value: Any) -> Any:
    """
    Trim and lower-case an email address before ``EmailStr`` checks its syntax.

    Accounts are looked up by exact match, so every stored address is
    lower-case.
    """
    if value is None or not isinstance(value, str):
        return value
    return ensure_utf8_encodable(strip_invisible_edges(value).lower())


def normalize_required_text(
    value: Any,
    *,
    field_name: str = "Field",
    strip_html: bool = False,
) -> Any:
    """Normalize required text fields: trim/sanitize, reject blank, enforce UTF-8."""
    if value is None or not isinstance(value, str):
        return value
    text = strip_html_tags(value) if strip_html else value
    text = strip_invisible_edges(text)
    if not text:
        raise ValueError(f"{field_name} cannot be blank")
    return ensure_utf8_encodable(text)


def normalize_phone(value: Any) -> Any:
    """Optional phone number: blank -> None, otherwise a loose format check."""
    if value is None or not isinstance(value, str):
        return value
    phone = value.strip()
    if not phone:
        return None
    if not PHONE_PATTERN.match(phone):
        raise ValueError("Invalid phone number format.")
    return phone
