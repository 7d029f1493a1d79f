"""Exception hierarchy for ascli.

All exceptions inherit from :class:`AscliError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`ascli.exit_codes`.
The top-level error handler in :func:`ascli.app.main` catches
``AscliError`` and exits with the appropriate code, while unexpected
exceptions produce a crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

Subclass hierarchy::

    AscliError (exit 1)
    +-- InvalidUsageError          (exit 2)
    +-- ConfigError                (exit 1)
    +-- CredentialError            (exit 3)
    |   +-- IncompleteCredentialError
    |   +-- InvalidPrivateKeyError
    |   +-- CredentialNotFoundError
    |   +-- AmbiguousCredentialError
    |   +-- KeychainUnavailableError
    +-- CredentialsWarning         (never raised, attached to listings)
    +-- SSRFRejectedError          (exit 2)
    +-- PaginationError            (exit 5)
    +-- APIError                   (exit 5)
    |   +-- NotFoundError          (exit 4)
    |   +-- UnauthorizedError      (exit 3)
    |   +-- ForbiddenError         (exit 3)
    |   +-- BadRequestError        (exit 2)
    +-- ConnectionError_           (exit 6)
    +-- TimeoutError_              (exit 8)
    +-- CancelledError_            (exit 130)
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Optional

from ascli.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CANCELLED,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
    EXIT_SERVER_ERROR,
    EXIT_TIMEOUT,
)

if TYPE_CHECKING:
    from ascli.models import RateLimitInfo


_ANSI_SEQUENCE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC ... BEL / ST
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)
_WHITESPACE_CONTROLS = re.compile(r"[\t\n\r]+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def sanitize_terminal(text: str) -> str:
    """Strip terminal escape sequences and control characters from *text*.

    Server-supplied strings end up on the user's terminal; an escape sequence
    in an error title must not be able to recolour, retitle, or rewrite it.
    Tabs and newlines collapse to a single space, every other C0/C1 control
    byte is dropped.

    Args:
        text: Untrusted text.

    Returns:
        The text with no ASCII/C1 control characters left.
    """
    if not text:
        return ""
    cleaned = _ANSI_SEQUENCE.sub("", text)
    cleaned = _WHITESPACE_CONTROLS.sub(" ", cleaned)
    return _CONTROL_CHARS.sub("", cleaned)


class AscliError(Exception):
    """Base exception for all ascli errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`ascli.exit_codes`. The entry point catches
    this exception type and calls ``sys.exit(exc.exit_code)``.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class InvalidUsageError(AscliError):
    """Raised for invalid CLI arguments or malformed request input."""

    exit_code = EXIT_INVALID_USAGE


class ConfigError(AscliError):
    """Raised for configuration problems (unreadable config file, bad setting values)."""

    exit_code = EXIT_GENERIC_FAILURE


# --- Credentials ---


class CredentialError(AscliError):
    """Base class for credential resolution failures. Always fatal to the calling operation."""

    exit_code = EXIT_AUTH_FAILURE


class IncompleteCredentialError(CredentialError):
    """Raised when credential input is only partially supplied.

    A partially set environment (for example ``ASC_KEY_ID`` without
    ``ASC_ISSUER_ID``) is an error rather than a reason to fall back to a
    stored profile.
    """


class InvalidPrivateKeyError(CredentialError):
    """Raised when a private key exists but is not a PEM ECDSA P-256 key."""


class CredentialNotFoundError(CredentialError):
    """Raised when no source yields a credential, or a named profile does not exist."""


class AmbiguousCredentialError(CredentialError):
    """Raised in strict mode when two sources name different credentials."""


class KeychainUnavailableError(CredentialError):
    """Raised when the system keychain cannot be opened."""


class CredentialsWarning(AscliError):
    """Non-fatal problem found while listing credentials.

    Never raised by :meth:`~ascli.auth.credential_store.CredentialStore.list_credentials`;
    it is attached to the returned listing so that callers can show a
    warning and still use the credentials that were found.
    """


# --- Transport ---


class SSRFRejectedError(AscliError):
    """Raised when a follow URL fails validation. The request is never sent."""

    exit_code = EXIT_INVALID_USAGE


class PaginationError(AscliError):
    """Raised when pagination revisits a URL or exceeds its page budget."""

    exit_code = EXIT_SERVER_ERROR


class ConnectionError_(AscliError):
    """Raised on network-level failures (DNS resolution, connection refused, reset).

    Named with a trailing underscore to avoid shadowing the built-in
    ``ConnectionError``.
    """

    exit_code = EXIT_CONNECTION_ERROR


class TimeoutError_(AscliError):
    """Raised when the caller's deadline elapses. Safe to retry at a higher level."""

    exit_code = EXIT_TIMEOUT


class CancelledError_(AscliError):
    """Raised when the caller cancels an in-flight request."""

    exit_code = EXIT_CANCELLED


# --- API errors ---


class APIError(AscliError):
    """An error response from the API, parsed from its JSON:API error envelope.

    Use :meth:`create` to build an instance; it returns the subclass whose
    :attr:`sentinel_code` matches ``code`` (case-insensitively), so callers
    can write ``except NotFoundError``. :meth:`matches` performs the same
    comparison against an arbitrary sentinel class.

    All fields are sanitised with :func:`sanitize_terminal` before they are
    rendered, so ``str(exc)`` is always safe to print.

    Attributes:
        code: The server's machine-readable error code (e.g. ``NOT_FOUND``).
        title: Short human-readable summary.
        detail: Longer explanation.
        status_code: HTTP status of the response, if known.
        rate_limit: Parsed rate-limit header of the failed response, if any.
    """

    exit_code = EXIT_SERVER_ERROR
    sentinel_code: str = ""

    def __init__(
        self,
        code: str = "",
        title: str = "",
        detail: str = "",
        status_code: Optional[int] = None,
        rate_limit: Optional[RateLimitInfo] = None,
    ) -> None:
        self.code = code
        self.title = title
        self.detail = detail
        self.status_code = status_code
        self.rate_limit = rate_limit
        super().__init__(self._render())

    @classmethod
    def create(
        cls,
        code: str = "",
        title: str = "",
        detail: str = "",
        status_code: Optional[int] = None,
        rate_limit: Optional[RateLimitInfo] = None,
    ) -> APIError:
        """Build the most specific :class:`APIError` subclass for *code*."""
        for sentinel in _SENTINELS:
            if _code_matches(code, sentinel.sentinel_code):
                return sentinel(code, title, detail, status_code, rate_limit)
        return APIError(code, title, detail, status_code, rate_limit)

    def matches(self, sentinel: type[APIError]) -> bool:
        """Return ``True`` if this error's code equals *sentinel*'s code, ignoring case."""
        if isinstance(self, sentinel) and sentinel is not APIError:
            return True
        return bool(sentinel.sentinel_code) and _code_matches(self.code, sentinel.sentinel_code)

    def _render(self) -> str:
        title = sanitize_terminal(self.title)
        detail = sanitize_terminal(self.detail)
        code = sanitize_terminal(self.code)
        if title and detail:
            return f"{title}: {detail}"
        if title:
            return title
        if detail:
            return detail
        if code:
            return code
        return "API error"

    def __str__(self) -> str:
        return self._render()


class NotFoundError(APIError):
    """The API reported ``NOT_FOUND``."""

    exit_code = EXIT_NOT_FOUND
    sentinel_code = "NOT_FOUND"


class UnauthorizedError(APIError):
    """The API reported ``UNAUTHORIZED`` (bad or expired token)."""

    exit_code = EXIT_AUTH_FAILURE
    sentinel_code = "UNAUTHORIZED"


class ForbiddenError(APIError):
    """The API reported ``FORBIDDEN`` (the key's role lacks access)."""

    exit_code = EXIT_AUTH_FAILURE
    sentinel_code = "FORBIDDEN"


class BadRequestError(APIError):
    """The API reported ``BAD_REQUEST``."""

    exit_code = EXIT_INVALID_USAGE
    sentinel_code = "BAD_REQUEST"


_SENTINELS: tuple[type[APIError], ...] = (
    NotFoundError,
    UnauthorizedError,
    ForbiddenError,
    BadRequestError,
)


def _code_matches(code: str, sentinel_code: str) -> bool:
    return bool(code) and code.casefold() == sentinel_code.casefold()
