"""Translation of non-2xx responses into :class:`~ascli.exceptions.APIError`.

App Store Connect returns JSON:API error envelopes::

    {"errors": [{"status": "404", "code": "NOT_FOUND",
                 "title": "Not found", "detail": "No app with id 123"}]}

The first error object is classified by its ``code``. A body that is not an
envelope yields a generic ``HTTP <status>`` error classified by the HTTP
status instead.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from ascli.exceptions import (
    APIError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)
from ascli.models import RateLimitInfo

_STATUS_CLASSES: dict[int, type[APIError]] = {
    400: BadRequestError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
}


def _first_error(body: bytes) -> Optional[dict[str, Any]]:
    if not body:
        return None
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(document, dict):
        return None
    errors = document.get("errors")
    if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
        return None
    return errors[0]


def parse_api_error(
    status_code: int,
    body: bytes,
    rate_limit: Optional[RateLimitInfo] = None,
) -> APIError:
    """Build the exception for an error response.

    Args:
        status_code: HTTP status of the response.
        body: Raw response body.
        rate_limit: Parsed rate-limit header, attached to the exception.

    Returns:
        The most specific :class:`~ascli.exceptions.APIError` subclass.
    """
    entry = _first_error(body)
    if entry is None:
        cls = _STATUS_CLASSES.get(status_code, APIError)
        return cls(
            title=f"HTTP {status_code}",
            status_code=status_code,
            rate_limit=rate_limit,
        )

    def field(name: str) -> str:
        value = entry.get(name)
        return value.strip() if isinstance(value, str) else ""

    return APIError.create(
        code=field("code"),
        title=field("title"),
        detail=field("detail"),
        status_code=status_code,
        rate_limit=rate_limit,
    )
