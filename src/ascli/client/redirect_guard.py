"""Validation of server-supplied URLs before any request follows them.

Pagination ``links.next`` values and report download URLs come from response
bodies. Following them blindly would let a hostile or compromised response
steer the client, and with it the bearer token, to an arbitrary host.

* :func:`validate_next_url` accepts only URLs on the API origin (or relative
  paths under a versioned API prefix); these requests are authenticated.
* :func:`validate_download_url` accepts only ``https`` URLs on an
  allow-listed storage domain; these requests are never authenticated.

Both fail closed with :class:`~ascli.exceptions.SSRFRejectedError`.
"""

from __future__ import annotations

from typing import Iterable
from urllib.parse import urljoin, urlsplit

from ascli.exceptions import SSRFRejectedError

API_BASE_URL = "https://api.appstoreconnect.apple.com"

API_PATH_PREFIXES = ("/v1/", "/v2/", "/v3/")

STORAGE_DOMAINS: frozenset[str] = frozenset({"apple.com", "mzstatic.com", "amazonaws.com"})

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> tuple[str, str, int]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    try:
        port = parts.port
    except ValueError:
        raise SSRFRejectedError(f"Invalid port in URL: {url}") from None
    if port is None:
        port = _DEFAULT_PORTS.get(scheme, -1)
    return scheme, (parts.hostname or "").lower(), port


def _reject_common(url: str) -> str:
    candidate = (url or "").strip()
    if not candidate:
        raise SSRFRejectedError("Empty URL")
    if candidate.startswith("//") or candidate.startswith("\\\\"):
        raise SSRFRejectedError(f"Scheme-relative URL rejected: {candidate}")
    if any(ch.isspace() or ord(ch) < 0x20 for ch in candidate):
        raise SSRFRejectedError("URL contains whitespace or control characters")
    parts = urlsplit(candidate)
    if parts.username is not None or parts.password is not None or "@" in parts.netloc:
        raise SSRFRejectedError("URL with embedded credentials rejected")
    return candidate


def validate_next_url(url: str, base_url: str = API_BASE_URL) -> str:
    """Validate a pagination link and return it as an absolute URL.

    Args:
        url: The ``links.next`` value (absolute, or a relative API path).
        base_url: The API origin the link must stay on.

    Returns:
        The absolute URL to request.

    Raises:
        SSRFRejectedError: If the URL is empty, scheme-relative, embeds
            credentials, points at another origin, or is a relative path
            outside the versioned API prefixes.
    """
    candidate = _reject_common(url)
    parts = urlsplit(candidate)

    if not parts.scheme and not parts.netloc:
        if not base_url:
            raise SSRFRejectedError(f"Relative URL without a base: {candidate}")
        if not candidate.startswith(API_PATH_PREFIXES):
            raise SSRFRejectedError(f"Relative URL outside the API paths: {candidate}")
        return urljoin(base_url, candidate)

    if _origin(candidate) != _origin(base_url):
        host = parts.hostname or ""
        raise SSRFRejectedError(f"Cross-origin URL rejected: {parts.scheme}://{host}")
    return candidate


def validate_download_url(
    url: str,
    allowed_domains: Iterable[str] = STORAGE_DOMAINS,
) -> str:
    """Validate a report or asset download URL.

    Args:
        url: The absolute download URL.
        allowed_domains: Hosts (and their subdomains) that may serve downloads.

    Returns:
        The URL unchanged.

    Raises:
        SSRFRejectedError: If the URL is not ``https``, has no host, embeds
            credentials, or its host is not on the allow-list.
    """
    candidate = _reject_common(url)
    parts = urlsplit(candidate)
    if not parts.scheme and not parts.netloc:
        raise SSRFRejectedError(f"Relative download URL rejected: {candidate}")
    if parts.scheme.lower() != "https":
        raise SSRFRejectedError(f"Download URL must use https: {candidate}")
    host = (parts.hostname or "").lower().rstrip(".")
    if not host:
        raise SSRFRejectedError(f"Download URL has no host: {candidate}")
    for domain in allowed_domains:
        domain = domain.lower().strip().lstrip(".")
        if domain and (host == domain or host.endswith("." + domain)):
            return candidate
    raise SSRFRejectedError(f"Download host not allowed: {host}")
