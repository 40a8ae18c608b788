from typing import Tuple
from urllib.parse import urlparse, urlunparse

from app.platform.exceptions import ValidationError

MAX_URL_LENGTH = 2048


def normalize_url(url: str) -> Tuple[str, bool]:
    """Add https:// to bare hostnames. Returns (url, was_modified)."""
    url = url.strip()
    if "://" not in url:
        return f"https://{url}", True
    return url, False


def validate_url(url: str) -> Tuple[bool, str, str]:
    """
    Shape check for a scan's start URL: (is_valid, normalized_url, error).

    The hostname is lower-cased and the fragment dropped. Whether the host is
    safe to fetch is a separate question for UrlSafetyFilter.
    """
    if not url or not url.strip():
        return False, "", "URL cannot be empty"

    normalized_url, _ = normalize_url(url)
    if len(normalized_url) > MAX_URL_LENGTH:
        return False, normalized_url, f"URL is longer than {MAX_URL_LENGTH} characters"

    try:
        parsed = urlparse(normalized_url)
        hostname = parsed.hostname
    except ValueError as e:
        return False, normalized_url, f"URL parsing error: {e}"

    if parsed.scheme not in ("http", "https"):
        return False, normalized_url, f"Invalid URL scheme: {parsed.scheme} (must be http or https)"
    if not hostname:
        return False, normalized_url, "Invalid URL format: missing domain"
    if any(c.isspace() for c in parsed.netloc):
        return False, normalized_url, "Invalid URL format: whitespace in domain"

    userinfo, at, hostport = parsed.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{hostport.lower()}"
    cleaned = urlunparse(parsed._replace(netloc=netloc, fragment=""))
    return True, cleaned, ""


def require_valid_url(url: str) -> str:
    """validate_url for service code: returns the normalized URL or raises ValidationError."""
    is_valid, normalized_url, error_message = validate_url(url)
    if not is_valid:
        raise ValidationError(f"Invalid URL: {error_message}")
    return normalized_url
