"""Synchronous request dispatcher for the App Store Connect API.

:class:`RequestDispatcher` is the single path every API call takes. It wraps
:class:`httpx.Client` and layers on:

- **Authentication** -- the credential is resolved once through
  :class:`~ascli.auth.credential_store.CredentialStore` and every attempt
  carries a bearer token from the shared
  :class:`~ascli.auth.signer.TokenSigner`.
- **URL validation** -- absolute URLs (pagination links) must stay on the API
  origin; download URLs must be on an allow-listed storage host and are
  fetched without credentials. See :mod:`ascli.client.redirect_guard`.
- **Error classification** -- non-2xx responses become typed
  :class:`~ascli.exceptions.APIError` subclasses.
- **Rate limits** -- the ``X-Rate-Limit`` header of every response is parsed
  and exposed as :attr:`RequestDispatcher.rate_limit`.
- **Retry with backoff** -- 429 for every method, 5xx for idempotent
  methods, and transport errors; exponential delay capped at
  ``retry_max_delay``, ``Retry-After`` honoured.
- **Deadlines and cancellation** -- ``timeout`` bounds the whole call,
  retries, sleeps and body reads included; a :class:`threading.Event`
  aborts it, also mid-body. A backoff that would outlast the deadline is
  skipped and the error that prompted it is raised.

See Also:
    :class:`~ascli.client.async_dispatcher.AsyncRequestDispatcher` for the
    asyncio equivalent.
"""

from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar
from urllib.parse import urljoin, urlsplit

import httpx
from pydantic import BaseModel, ValidationError

from ascli import __version__
from ascli.auth.credential_store import CredentialStore
from ascli.auth.signer import TokenSigner
from ascli.client.errors import parse_api_error
from ascli.client.pagination import DEFAULT_MAX_PAGES, PageObserver, paginate_all_with_observer
from ascli.client.ratelimit import RATE_LIMIT_HEADER, parse_rate_limit_header
from ascli.client.redirect_guard import (
    API_BASE_URL,
    STORAGE_DOMAINS,
    validate_download_url,
    validate_next_url,
)
from ascli.exceptions import (
    APIError,
    CancelledError_,
    ConnectionError_,
    TimeoutError_,
    UnauthorizedError,
)
from ascli.models import Credential, Page, RateLimitInfo, RequestConfig, Resource, utcnow
from ascli.output import get_output

USER_AGENT = f"ascli/{__version__}"
DEFAULT_ACCEPT = "application/json"
REPORT_ACCEPT = "application/a-gzip"

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "PUT", "DELETE", "OPTIONS"})
RETRYABLE_SERVER_STATUSES = frozenset({500, 502, 503, 504})
TOO_MANY_REQUESTS = 429
MAX_DOWNLOAD_REDIRECTS = 5
LOW_RATE_LIMIT_THRESHOLD = 0.1

P = TypeVar("P", bound=BaseModel)


class DispatcherBase:
    """State and helpers shared by the sync and async dispatchers.

    Args:
        credential: Pre-resolved credential. When ``None`` it is resolved
            through *store* on the first authenticated request.
        store: Credential store used for resolution.
        profile: Explicit profile name passed to the store.
        signer: Token signer; share one instance between dispatchers.
        config: Request settings; defaults to :class:`~ascli.models.RequestConfig`.
        base_url: API origin.
        allowed_download_domains: Storage hosts downloads may come from.
    """

    def __init__(
        self,
        credential: Optional[Credential] = None,
        store: Optional[CredentialStore] = None,
        profile: Optional[str] = None,
        signer: Optional[TokenSigner] = None,
        config: Optional[RequestConfig] = None,
        base_url: str = API_BASE_URL,
        allowed_download_domains: Iterable[str] = STORAGE_DOMAINS,
    ) -> None:
        self._credential = credential
        self._store = store
        self._profile = profile
        self._signer = signer or TokenSigner()
        self._config = config or RequestConfig()
        self._base_url = base_url.rstrip("/")
        self._allowed_download_domains = frozenset(allowed_download_domains)
        self._rate_limit: Optional[RateLimitInfo] = None
        self._credential_lock = threading.Lock()
        self._warned_low = False

    @property
    def config(self) -> RequestConfig:
        return self._config

    @property
    def signer(self) -> TokenSigner:
        return self._signer

    @property
    def rate_limit(self) -> Optional[RateLimitInfo]:
        """The rate-limit info of the most recent response that carried one."""
        return self._rate_limit

    @property
    def credential(self) -> Credential:
        """The credential signing requests, resolved on first use."""
        if self._credential is None:
            with self._credential_lock:
                if self._credential is None:
                    store = self._store or CredentialStore()
                    self._credential = store.resolve(self._profile)
        return self._credential

    # ------------------------------------------------------------------ #
    # Request building
    # ------------------------------------------------------------------ #

    def _resolve_url(self, path: str) -> str:
        parts = urlsplit(path.strip())
        if parts.scheme or parts.netloc or path.strip().startswith("//"):
            return validate_next_url(path, self._base_url)
        return path

    def _headers(self, accept: str, authenticate: bool, has_body: bool) -> dict[str, str]:
        headers = {"Accept": accept, "User-Agent": USER_AGENT}
        if has_body:
            headers["Content-Type"] = "application/json"
        if authenticate:
            headers["Authorization"] = self._signer.authorization_header(self.credential)
        return headers

    @staticmethod
    def _encode_body(body: Any) -> Optional[bytes]:
        """Serialise a request body: models and JSON values as JSON, bytes/str raw."""
        if body is None:
            return None
        if isinstance(body, BaseModel):
            return body.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
        if isinstance(body, (bytes, bytearray)):
            return bytes(body)
        if isinstance(body, str):
            return body.encode("utf-8")
        return json.dumps(body).encode("utf-8")

    # ------------------------------------------------------------------ #
    # Response handling
    # ------------------------------------------------------------------ #

    def _record_rate_limit(self, response: httpx.Response) -> None:
        info = parse_rate_limit_header(response.headers.get(RATE_LIMIT_HEADER))
        if info is None:
            return
        self._rate_limit = info
        output = get_output()
        output.debug(f"Rate limit: {info.summary()}")
        if info.is_low(LOW_RATE_LIMIT_THRESHOLD) and not self._warned_low:
            self._warned_low = True
            output.warning(f"API rate limit nearly exhausted: {info.summary()}")

    def _error_for(self, response: httpx.Response, body: bytes) -> APIError:
        error = parse_api_error(response.status_code, body, self._rate_limit)
        if isinstance(error, UnauthorizedError) and self._credential is not None:
            # The token was rejected; sign a new one next time.
            self._signer.invalidate(self._credential)
        return error

    @staticmethod
    def _should_retry(method: str, status_code: int) -> bool:
        if status_code == TOO_MANY_REQUESTS:
            return True
        return method.upper() in IDEMPOTENT_METHODS and status_code in RETRYABLE_SERVER_STATUSES

    @staticmethod
    def _should_retry_transport(method: str, exc: httpx.TransportError) -> bool:
        """Whether a failed send may be repeated.

        Non-idempotent requests are only repeated when the connection was
        never established, so the server cannot have received the body.
        """
        if method.upper() in IDEMPOTENT_METHODS:
            return True
        return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))

    def _backoff(self, attempt: int, retry_after: Optional[str] = None) -> float:
        """Delay before retry *attempt* + 1, honouring ``Retry-After`` within the cap."""
        cap = self._config.retry_max_delay
        hinted = _parse_retry_after(retry_after)
        if hinted is not None:
            return min(hinted, cap)
        return min(self._config.retry_base_delay * (2 ** attempt), cap)

    def _deadline(self, timeout: Optional[float]) -> float:
        return time.monotonic() + (timeout if timeout is not None else self._config.timeout)

    @staticmethod
    def _fits(delay: float, deadline: float) -> bool:
        """Whether sleeping *delay* seconds still leaves time before *deadline*."""
        return delay < deadline - time.monotonic()

    @staticmethod
    def _remaining(deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError_("Request deadline exceeded")
        return remaining

    @staticmethod
    def _decode_page(body: bytes, page_type: type[P]) -> P:
        try:
            return page_type.model_validate_json(body)
        except ValidationError as exc:
            raise APIError(
                title="Unexpected response body",
                detail=str(exc).splitlines()[0],
            ) from exc

    @staticmethod
    def _decode_json(body: bytes) -> Any:
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise APIError(title="Response is not valid JSON", detail=str(exc)) from exc


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        return None
    return max((when - utcnow()).total_seconds(), 0.0)


class RequestDispatcher(DispatcherBase):
    """Blocking dispatcher backed by :class:`httpx.Client`.

    Must be used as a context manager so that the underlying connection
    pools are opened and closed.

    Args:
        transport: Optional httpx transport for API requests (tests use
            :class:`httpx.MockTransport`).
        download_transport: Optional transport for unauthenticated downloads.
        sleep: Backoff sleep function; defaults to :func:`time.sleep`.
        **kwargs: Forwarded to :class:`DispatcherBase`.

    Example::

        with RequestDispatcher(profile="work") as dispatcher:
            apps = dispatcher.paginate("/v1/apps", Page[Resource])
    """

    def __init__(
        self,
        credential: Optional[Credential] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        download_transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(credential, **kwargs)
        self._transport = transport
        self._download_transport = download_transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None
        self._download_client: Optional[httpx.Client] = None

    # ------------------------------------------------------------------ #
    # Context manager
    # ------------------------------------------------------------------ #

    def __enter__(self) -> RequestDispatcher:
        self._client = httpx.Client(
            base_url=self._base_url,
            timeout=self._config.timeout,
            follow_redirects=False,
            transport=self._transport,
        )
        # Downloads get their own client: no base URL, no shared state.
        self._download_client = httpx.Client(
            timeout=self._config.timeout,
            follow_redirects=False,
            transport=self._download_transport,
        )
        return self

    def __exit__(self, *args: object) -> None:
        for client in (self._client, self._download_client):
            if client is not None:
                client.close()
        self._client = None
        self._download_client = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def dispatch(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[dict[str, Any]] = None,
        accept: str = DEFAULT_ACCEPT,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """Send an authenticated request and return the response body.

        Args:
            method: HTTP method.
            path: API path (``/v1/apps``) or an absolute URL on the API origin.
            body: Request body (pydantic model, JSON value, ``bytes`` or ``str``).
            params: Query parameters.
            accept: ``Accept`` header value.
            timeout: Deadline in seconds for the whole call, retries
                included; defaults to the configured timeout.
            cancel: Set to abort the call.

        Returns:
            The raw response body (``b""`` for empty responses).

        Raises:
            SSRFRejectedError: *path* is an absolute URL off the API origin.
            APIError: The API returned an error (after retries, if retryable).
            ConnectionError_: Transport failures persisted through all retries.
            TimeoutError_: The deadline elapsed.
            CancelledError_: *cancel* was set.
            CredentialError: No usable credential.
        """
        url = self._resolve_url(path)
        deadline = self._deadline(timeout)
        response = self._send(
            method,
            url,
            body=body,
            params=params,
            accept=accept,
            deadline=deadline,
            cancel=cancel,
        )
        try:
            return self._read_body(response, deadline, cancel)
        finally:
            response.close()

    def dispatch_json(self, method: str, path: str, body: Any = None, **kwargs: Any) -> Any:
        """Like :meth:`dispatch`, decoding the JSON body (``None`` when empty)."""
        return self._decode_json(self.dispatch(method, path, body, **kwargs))

    def fetch_page(
        self,
        next_url: str,
        page_type: type[P] = Page[Resource],  # type: ignore[assignment]
        **kwargs: Any,
    ) -> P:
        """Fetch one page from a server-supplied ``next`` link.

        Raises:
            SSRFRejectedError: The link fails :func:`validate_next_url`;
                nothing is sent.
        """
        url = validate_next_url(next_url, self._base_url)
        return self._decode_page(self.dispatch("GET", url, **kwargs), page_type)

    def paginate(
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
        first = self._decode_page(self.dispatch("GET", path, params=params, **kwargs), page_type)
        return paginate_all_with_observer(
            first,
            lambda url: self.fetch_page(url, page_type, **kwargs),
            observer,
            max_pages=max_pages,
        )

    @contextmanager
    def dispatch_stream(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[dict[str, Any]] = None,
        accept: str = REPORT_ACCEPT,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[httpx.Response]:
        """Authenticated request yielding a streaming response; closed on exit.

        *timeout* bounds the wait for the response headers; reading the body
        is up to the caller.
        """
        url = self._resolve_url(path)
        response = self._send(
            method,
            url,
            body=body,
            params=params,
            accept=accept,
            deadline=self._deadline(timeout),
            cancel=cancel,
        )
        try:
            yield response
        finally:
            response.close()

    @contextmanager
    def dispatch_stream_unauthenticated(
        self,
        url: str,
        *,
        accept: str = "*/*",
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[httpx.Response]:
        """Download from a storage host without credentials.

        Every URL, redirect targets included, must pass
        :func:`validate_download_url`; no ``Authorization`` header is ever sent.
        """
        assert self._download_client is not None, "Dispatcher not initialised -- use as context manager"
        current = validate_download_url(url, self._allowed_download_domains)
        deadline = self._deadline(timeout)
        for _ in range(MAX_DOWNLOAD_REDIRECTS + 1):
            response = self._send(
                "GET",
                current,
                accept=accept,
                deadline=deadline,
                cancel=cancel,
                authenticate=False,
                client=self._download_client,
                accept_redirects=True,
            )
            if not response.is_redirect:
                break
            location = response.headers.get("Location", "")
            response.close()
            current = validate_download_url(urljoin(current, location), self._allowed_download_domains)
        else:
            raise ConnectionError_(f"Too many redirects downloading {url}")
        try:
            yield response
        finally:
            response.close()

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> None:
        if cancel is not None:
            if cancel.wait(delay):
                raise CancelledError_("Request cancelled")
        else:
            self._sleep(delay)

    @staticmethod
    def _read_body(
        response: httpx.Response,
        deadline: float,
        cancel: Optional[threading.Event],
    ) -> bytes:
        """Read a streamed body chunk by chunk, enforcing *deadline* and *cancel*.

        A per-read socket timeout alone lets a slowly trickling body run past
        the deadline, so the clock is checked after every chunk.
        """
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                if cancel is not None and cancel.is_set():
                    raise CancelledError_("Request cancelled")
                if time.monotonic() >= deadline:
                    raise TimeoutError_("Request deadline exceeded while reading the response")
        except httpx.TimeoutException as exc:
            raise TimeoutError_("Request timed out while reading the response") from exc
        except httpx.TransportError as exc:
            raise ConnectionError_(f"Connection lost while reading the response: {exc}") from exc
        return b"".join(chunks)

    def _send(
        self,
        method: str,
        url: str,
        *,
        deadline: float,
        body: Any = None,
        params: Optional[dict[str, Any]] = None,
        accept: str = DEFAULT_ACCEPT,
        cancel: Optional[threading.Event] = None,
        authenticate: bool = True,
        client: Optional[httpx.Client] = None,
        accept_redirects: bool = False,
    ) -> httpx.Response:
        """Execute a request with retry and return the successful response.

        The response is opened in streaming mode with its body unread; the
        caller reads and closes it.
        """
        client = client or self._client
        assert client is not None, "Dispatcher not initialised -- use as context manager"

        method = method.upper()
        content = self._encode_body(body)
        max_retries = self._config.max_retries
        output = get_output()

        for attempt in range(max_retries + 1):
            if cancel is not None and cancel.is_set():
                raise CancelledError_("Request cancelled")
            request = client.build_request(
                method,
                url,
                params=params,
                content=content,
                headers=self._headers(accept, authenticate, content is not None),
                timeout=self._remaining(deadline),
            )
            try:
                response = client.send(request, stream=True)
            except httpx.TransportError as exc:
                if isinstance(exc, httpx.TimeoutException) and time.monotonic() >= deadline:
                    raise TimeoutError_(f"Request timed out: {method} {url}") from exc
                if attempt < max_retries and self._should_retry_transport(method, exc):
                    delay = self._backoff(attempt)
                    if self._fits(delay, deadline):
                        output.debug(
                            f"Connection error: {exc}, retrying in {delay:g}s "
                            f"(attempt {attempt + 1}/{max_retries})"
                        )
                        self._wait(delay, cancel)
                        continue
                attempts = "1 attempt" if attempt == 0 else f"{attempt + 1} attempts"
                raise ConnectionError_(f"Connection failed after {attempts}: {exc}") from exc

            self._record_rate_limit(response)
            if cancel is not None and cancel.is_set():
                response.close()
                raise CancelledError_("Request cancelled")
            if response.is_success or (accept_redirects and response.is_redirect):
                return response

            try:
                error = self._error_for(response, self._read_body(response, deadline, cancel))
            finally:
                response.close()
            if attempt < max_retries and self._should_retry(method, response.status_code):
                delay = self._backoff(attempt, response.headers.get("Retry-After"))
                if self._fits(delay, deadline):
                    output.debug(
                        f"HTTP {response.status_code}, retrying in {delay:g}s "
                        f"(attempt {attempt + 1}/{max_retries})"
                    )
                    self._wait(delay, cancel)
                    continue
                output.debug(
                    f"HTTP {response.status_code}, not retrying: a {delay:g}s backoff "
                    "would pass the deadline"
                )
            raise error

        raise ConnectionError_("Request failed after all retries")  # pragma: no cover
