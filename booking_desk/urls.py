"""Absolute URL construction for links sent to guests."""

from typing import Mapping, Optional
from urllib.parse import urljoin, urlsplit

DEFAULT_BASE_URL = "http://localhost:8000"


def _normalize_base_url(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return trimmed
    parts = urlsplit(trimmed)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return trimmed.rstrip("/")


def _from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    if not headers:
        return None
    host = headers.get("x-forwarded-host") or headers.get("host")
    if not host:
        return None
    proto = headers.get("x-forwarded-proto") or (
        "http" if "localhost" in host else "https"
    )
    return f"{proto}://{host}"


def resolve_app_base_url(
    app_url: Optional[str] = None, headers: Optional[Mapping[str, str]] = None
) -> str:
    """Pick the public origin: configured URL, then request headers, then localhost."""
    if app_url and app_url.strip():
        return _normalize_base_url(app_url)

    header_url = _from_headers(headers)
    if header_url:
        return _normalize_base_url(header_url)

    return DEFAULT_BASE_URL


def build_absolute_url(path: str, base_url: str) -> str:
    if not path.startswith("/"):
        return urljoin(f"{base_url}/", path)
    return f"{base_url}{path}"
