"""HTTP transport for the App Store Connect API.

Classes:
    :class:`RequestDispatcher` -- blocking dispatcher backed by :class:`httpx.Client`.
    :class:`AsyncRequestDispatcher` -- non-blocking dispatcher backed by
    :class:`httpx.AsyncClient`.

Both are context managers and share the same contract: bearer-token
authentication, validation of server-supplied URLs, typed API errors,
rate-limit tracking, and retry with exponential backoff.

Example::

    from ascli.client import RequestDispatcher

    with RequestDispatcher() as dispatcher:
        apps = dispatcher.dispatch_json("GET", "/v1/apps", params={"limit": 200})
"""

from ascli.client.async_dispatcher import AsyncRequestDispatcher
from ascli.client.dispatcher import RequestDispatcher
from ascli.client.pagination import PaginatedResponse, paginate_all, paginate_all_with_observer
from ascli.client.ratelimit import parse_rate_limit_header
from ascli.client.redirect_guard import validate_download_url, validate_next_url

__all__ = [
    "AsyncRequestDispatcher",
    "PaginatedResponse",
    "RequestDispatcher",
    "paginate_all",
    "paginate_all_with_observer",
    "parse_rate_limit_header",
    "validate_download_url",
    "validate_next_url",
]
