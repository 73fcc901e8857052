"""
Validation of stream destination configuration.

Each check raises ValidationError(field, reason) on the first problem so
the API can point the caller at the offending form field.

Invariants:
    - A url passes only if it is an absolute http or https URL with a host
    - A token passes only if absent, or non-empty visible ASCII (no whitespace),
      since it is sent verbatim in the Authorization header
"""

from __future__ import annotations

from urllib.parse import urlsplit

from ..errors import ValidationError

MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = ("http", "https")


def validate_project_id(project_id: str | None) -> str:
    if not project_id or not project_id.strip():
        raise ValidationError("project_id", "is required")
    return project_id


def validate_url(url: str | None) -> str:
    """Check that url is a well-formed absolute http(s) URL.

    Args:
        url: Candidate destination URL

    Returns:
        The url, stripped of surrounding whitespace

    Raises:
        ValidationError: If the url is missing or malformed
    """
    if url is None or not url.strip():
        raise ValidationError("url", "is required")

    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError("url", f"must be at most {MAX_URL_LENGTH} characters")
    if any(c.isspace() for c in url):
        raise ValidationError("url", "must not contain whitespace")

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ValidationError("url", f"is not a valid URL ({e})")

    if not parts.scheme:
        raise ValidationError("url", "must be an absolute URL")
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError("url", "scheme must be http or https")
    if not parts.hostname:
        raise ValidationError("url", "must include a host")
    if port == 0:
        raise ValidationError("url", "port must be between 1 and 65535")

    return url


def validate_token(token: str | None) -> str | None:
    """Check an optional bearer token.

    Raises:
        ValidationError: If the token is present but empty, contains whitespace
            or control characters, or is not ASCII
    """
    if token is None:
        return None
    if token == "":
        raise ValidationError("token", "must not be empty when provided")
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7F for c in token):
        raise ValidationError("token", "must not contain whitespace or control characters")
    if not token.isascii():
        raise ValidationError("token", "must contain only printable ASCII characters")
    return token
