import re
from typing import Any, Iterable, Optional


_SUSPICIOUS_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"traceback", re.IGNORECASE),
    re.compile(r"\bfile\s+\".*?\.py\"", re.IGNORECASE),
    re.compile(r"sqlalchemy", re.IGNORECASE),
    re.compile(r"sqlite3", re.IGNORECASE),
    re.compile(r"asyncpg", re.IGNORECASE),
    re.compile(r"redis", re.IGNORECASE),
    re.compile(r"\boperationalerror\b", re.IGNORECASE),
    re.compile(r"\bintegrityerror\b", re.IGNORECASE),
    re.compile(r"\[sql:", re.IGNORECASE),
    re.compile(r"-----BEGIN [A-Z ]*KEY-----"),
    re.compile(r"/home/|/users/|[a-z]:\\", re.IGNORECASE),
)

MAX_VALIDATION_ERRORS = 5


def sanitize_public_error_message(
    message: Optional[str],
    *,
    fallback: str = "Internal error",
    max_chars: int = 240,
) -> Optional[str]:
    """
    Sanitize an error message before returning it to clients.

    Treat `message` as untrusted: it may contain stack traces, SQL, file paths,
    key material or other internal details (especially if derived from
    `str(exception)`).
    """
    if not message:
        return None

    # Unpaired surrogates would crash the JSON encoder
    safe = message.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
    safe = re.sub(r"\s+", " ", safe).strip()
    if not safe:
        return None

    if any(p.search(safe) for p in _SUSPICIOUS_ERROR_PATTERNS):
        return fallback

    if len(safe) > max_chars:
        return f"{safe[:max_chars]}..."
    return safe


def _field_path(loc: Iterable[Any]) -> str:
    # Drop the "body"/"query" prefix FastAPI adds
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts)


def format_validation_errors(errors: list[dict]) -> str:
    """
    Collapse pydantic error dicts into one client-facing message.

    Input values are never echoed back, only field names and messages.
    """
    messages = []
    for err in errors[:MAX_VALIDATION_ERRORS]:
        text = sanitize_public_error_message(str(err.get("msg", "")), fallback="Invalid value", max_chars=120)
        field = _field_path(err.get("loc", ()))
        messages.append(f"{field}: {text}" if field else (text or "Invalid value"))

    if len(errors) > MAX_VALIDATION_ERRORS:
        messages.append(f"... ({len(errors) - MAX_VALIDATION_ERRORS} more)")

    return "; ".join(messages) or "Invalid request."
