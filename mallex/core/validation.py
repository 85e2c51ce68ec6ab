"""Input validation helpers.

Shared by the lifecycle engine (suggestion text), the CLI (argument
sanitising) and the HTTP store (backend URL checks).
"""

import logging
import re
from typing import Any, Optional

from mallex.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_SUGGESTION_LENGTH = 500
MAX_NOTE_LENGTH = 500

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> str:
    """Sanitize and validate string inputs.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed string length.
        required: If True, empty or whitespace-only strings are rejected.

    Returns:
        The string with control characters (other than newline and tab)
        removed.

    Raises:
        ValidationError: If validation fails.
    """
    if value is None and not required:
        return ""

    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {type(value).__name__}")

    if required and not value.strip():
        raise ValidationError(field_name, "cannot be empty")

    if len(value) > max_length:
        raise ValidationError(
            field_name, f"too long (max {max_length} characters, got {len(value)})"
        )

    return _CONTROL_CHARS.sub("", value)


def validate_suggestion_text(text: Any) -> str:
    """Trim suggestion text and reject empty or oversized input."""
    cleaned = sanitize_string(text, "text", MAX_SUGGESTION_LENGTH).strip()
    if not cleaned:
        raise ValidationError("text", "cannot be empty")
    return cleaned


def validate_note(note: Any) -> Optional[str]:
    """Moderator notes are optional; blank notes are stored as None."""
    if note is None:
        return None
    cleaned = sanitize_string(note, "note", MAX_NOTE_LENGTH, required=False).strip()
    return cleaned or None


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected (with a
        warning logged for each rejection reason).
    """
    if not url:
        return None
    from urllib.parse import urlparse

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url
