"""Asynchronous request dispatcher -- mirrors :class:`~ascli.client.dispatcher.RequestDispatcher`.

:class:`AsyncRequestDispatcher` wraps :class:`httpx.AsyncClient` and offers
the same contract as the blocking dispatcher (authentication, URL
validation, error classification, rate-limit tracking, retry with backoff)
for use inside an event loop. Concurrent tasks may share one dispatcher and
therefore one :class:`~ascli.auth.signer.TokenSigner`.

Deadlines are enforced with :func:`asyncio.wait_for` around the whole call,
retries and body reads included. As in the blocking dispatcher, a backoff
that would outlast the deadline is not taken and the error that prompted it
is raised instead. Authenticated headers are built in a worker thread so
credential lookup and signing never block the loop. Cancellation is ordinary
task cancellation: cancelling the awaiting task aborts the request.

See Also:
    :class:`~ascli.client.dispatcher.RequestDispatcher` for the blocking
    equivalent.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel

from ascli.client.dispatcher import (
    DEFAULT_ACCEPT,
    MAX_DOWNLOAD_REDIRECTS,
    REPORT_ACCEPT,
    DispatcherBase,
)
from ascli.client.pagination import DEFAULT_MAX_PAGES, PageObserver, paginate_all_async
from ascli.client.redirect_guard import validate_download_url, validate_next_url
from ascli.exceptions import ConnectionError_, TimeoutError_
from ascli.models import Credential, Page, Resource
from ascli.output import get_output

P = TypeVar("P", bound=BaseModel)
T = TypeVar("T")


class AsyncRequestDispatcher(DispatcherBase):
    """Non-blocking dispatcher backed by :class:`httpx.AsyncClient`.

    Must be used as an async context manager.

    Args:
        transport: Optional async httpx transport for API requests.
        download_transport: Optional async transport for downloads.
        sleep: Backoff sleep coroutine; defaults to :func:`asyncio.sleep`.
        **kwargs: Forwarded to :class:`~ascli.client.dispatcher.DispatcherBase`.

    Example::

        async with AsyncRequestDispatcher(profile="work") as dispatcher:
            apps, builds = await asyncio.gather(
                dispatcher.dispatch_json("GET", "/v1/apps"),
                dispatcher.dispatch_json("GET", "/v1/builds"),
            )
    """

    def __init__(
        self,
        credential: Optional[Credential] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        download_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(credential, **kwargs)
        self._transport = transport
        self._download_transport = download_transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self._download_client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> AsyncRequestDispatcher:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._config.timeout,
            follow_redirects=False,
            transport=self._transport,
        )
        self._download_client = httpx.AsyncClient(
            timeout=self._config.timeout,
            follow_redirects=False,
            transport=self._download_transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        for client in (self._client, self._download_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._download_client = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def dispatch(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[dict[str, Any]] = None,
        accept: str = DEFAULT_ACCEPT,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Send an authenticated request and return the response body.

        Raises:
            SSRFRejectedError: *path* is an absolute URL off the API origin.
            APIError: The API returned an error (after retries, if retryable).
            ConnectionError_: Transport failures persisted through all retries.
            TimeoutError_: The deadline elapsed.
        """
        url = self._resolve_url(path)
        deadline = self._deadline(timeout)

        async def call() -> bytes:
            response = await self._send(
                method, url, body=body, params=params, accept=accept, deadline=deadline
            )
            try:
                return await response.aread()
            finally:
                await response.aclose()

        return await self._with_deadline(call(), deadline)

    async def dispatch_json(self, method: str, path: str, body: Any = None, **kwargs: Any) -> Any:
        """Like :meth:`dispatch`, decoding the JSON body (``None`` when empty)."""
        return self._decode_json(await self.dispatch(method, path, body, **kwargs))

    async def fetch_page(
        self,
        next_url: str,
        page_type: type[P] = Page[Resource],  # type: ignore[assignment]
        **kwargs: Any,
    ) -> P:
        """Fetch one page from a server-supplied ``next`` link."""
        url = validate_next_url(next_url, self._base_url)
        return self._decode_page(await self.dispatch("GET", url, **kwargs), page_type)

    async def paginate(
        self,
        path: str,
        page_type: type[P] = Page[Resource],  # type: ignore[assignment]
        *,
        params: Optional[dict[str, Any]] = None,
        observer: Optional[PageObserver] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
        **kwargs: Any,
    ) -> P:
        """Fetch *path* and every following page, merged into one response."""
        body = await self.dispatch("GET", path, params=params, **kwargs)
        first = self._decode_page(body, page_type)
        return await paginate_all_async(
            first,
            lambda url: self.fetch_page(url, page_type, **kwargs),
            observer,
            max_pages=max_pages,
        )

    @asynccontextmanager
    async def dispatch_stream(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[dict[str, Any]] = None,
        accept: str = REPORT_ACCEPT,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Authenticated request yielding a streaming response; closed on exit."""
        url = self._resolve_url(path)
        deadline = self._deadline(timeout)
        response = await self._with_deadline(
            self._send(method, url, body=body, params=params, accept=accept, deadline=deadline),
            deadline,
        )
        try:
            yield response
        finally:
            await response.aclose()

    @asynccontextmanager
    async def dispatch_stream_unauthenticated(
        self,
        url: str,
        *,
        accept: str = "*/*",
        timeout: Optional[float] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Download from a storage host without credentials, validating every redirect."""
        assert self._download_client is not None, "Dispatcher not initialised -- use as async context manager"
        first = validate_download_url(url, self._allowed_download_domains)
        deadline = self._deadline(timeout)

        async def follow() -> httpx.Response:
            current = first
            for _ in range(MAX_DOWNLOAD_REDIRECTS + 1):
                response = await self._send(
                    "GET",
                    current,
                    accept=accept,
                    deadline=deadline,
                    authenticate=False,
                    client=self._download_client,
                    accept_redirects=True,
                )
                if not response.is_redirect:
                    return response
                location = response.headers.get("Location", "")
                await response.aclose()
                current = validate_download_url(
                    urljoin(current, location), self._allowed_download_domains
                )
            raise ConnectionError_(f"Too many redirects downloading {url}")

        response = await self._with_deadline(follow(), deadline)
        try:
            yield response
        finally:
            await response.aclose()

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _with_deadline(self, call: Awaitable[T], deadline: float) -> T:
        try:
            return await asyncio.wait_for(call, max(deadline - time.monotonic(), 0.0))
        except asyncio.TimeoutError as exc:
            raise TimeoutError_("Request deadline exceeded") from exc

    async def _build_headers(self, accept: str, authenticate: bool, has_body: bool) -> dict[str, str]:
        if not authenticate:
            return self._headers(accept, False, has_body)
        # Credential resolution reads files and the keychain and signing may
        # load a key; keep both off the event loop.
        return await asyncio.to_thread(self._headers, accept, True, has_body)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        deadline: float,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
        accept: str = DEFAULT_ACCEPT,
        authenticate: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        accept_redirects: bool = False,
    ) -> httpx.Response:
        """Execute a request with retry; return the streaming response (caller closes)."""
        client = client or self._client
        assert client is not None, "Dispatcher not initialised -- use as async context manager"

        method = method.upper()
        content = self._encode_body(body)
        max_retries = self._config.max_retries
        output = get_output()

        for attempt in range(max_retries + 1):
            request = client.build_request(
                method,
                url,
                params=params,
                content=content,
                headers=await self._build_headers(accept, authenticate, content is not None),
            )
            try:
                response = await client.send(request, stream=True)
            except httpx.TransportError as exc:
                if attempt < max_retries and self._should_retry_transport(method, exc):
                    delay = self._backoff(attempt)
                    if self._fits(delay, deadline):
                        output.debug(
                            f"Connection error: {exc}, retrying in {delay:g}s "
                            f"(attempt {attempt + 1}/{max_retries})"
                        )
                        await self._sleep(delay)
                        continue
                attempts = "1 attempt" if attempt == 0 else f"{attempt + 1} attempts"
                raise ConnectionError_(f"Connection failed after {attempts}: {exc}") from exc

            self._record_rate_limit(response)
            if response.is_success or (accept_redirects and response.is_redirect):
                return response

            try:
                error = self._error_for(response, await response.aread())
            finally:
                await response.aclose()
            if attempt < max_retries and self._should_retry(method, response.status_code):
                delay = self._backoff(attempt, response.headers.get("Retry-After"))
                if self._fits(delay, deadline):
                    output.debug(
                        f"HTTP {response.status_code}, retrying in {delay:g}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    await self._sleep(delay)
                    continue
                output.debug(
                    f"HTTP {response.status_code}, not retrying: a {delay:g}s backoff "
                    "would pass the deadline"
                )
            raise error

        raise ConnectionError_("Request failed after all retries")  # pragma: no cover
