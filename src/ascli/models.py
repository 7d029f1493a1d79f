"""Canonical Pydantic models shared across all ascli modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into four groups:

**Credential models** -- :class:`CredentialSource`, :class:`StoredCredential`
(the shape persisted in the config file and keychain), :class:`Credential`
(a resolved, immutable credential), and :class:`SignedToken`.

**Configuration models** -- :class:`ConfigFile` (the on-disk JSON document)
and :class:`RequestConfig` (effective request settings).

**Transport models** -- :class:`RateLimitWindow`, :class:`RateLimitInfo`,
:class:`Resource`, :class:`PageLinks`, and the generic :class:`Page`.

**Doctor models** -- :class:`DoctorStatus`, :class:`DoctorFix`,
:class:`DoctorCheck`, :class:`DoctorSection`, :class:`DoctorSummary`,
:class:`DoctorReport`, and :class:`DoctorOptions`.

All models use Pydantic v2.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


# --- Credentials ---


class CredentialSource(str, enum.Enum):
    """Where a resolved credential came from."""

    ENV = "env"
    KEYCHAIN = "keychain"
    CONFIG = "config"


class StoredCredential(BaseModel):
    """A named API key profile as persisted in the config file or keychain.

    The private key itself is never stored; only the path to the ``.p8``
    file downloaded from App Store Connect.
    """

    name: str
    key_id: str = ""
    issuer_id: str = ""
    private_key_path: str = ""

    @property
    def is_complete(self) -> bool:
        """Whether key id, issuer id, and private key path are all non-blank."""
        return all(
            value.strip()
            for value in (self.key_id, self.issuer_id, self.private_key_path)
        )


class Credential(BaseModel):
    """A resolved credential, ready to be handed to the token signer.

    Instances are frozen: once resolution picks a credential it is never
    mutated for the rest of the process.

    Attributes:
        name: Profile name (``"env"`` for environment credentials).
        key_id: App Store Connect API key id (the JWT ``kid`` header).
        issuer_id: Issuer id (the JWT ``iss`` claim).
        private_key_path: Path to the PEM ``.p8`` private key.
        source: Which source produced the credential.
        source_path: Config file path for ``config`` credentials.
        is_default: Whether the source marks this profile as its default.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    key_id: str = ""
    issuer_id: str = ""
    private_key_path: str = ""
    source: CredentialSource
    source_path: Optional[str] = None
    is_default: bool = False

    @property
    def is_complete(self) -> bool:
        """Whether key id, issuer id, and private key path are all non-blank."""
        return all(
            value.strip()
            for value in (self.key_id, self.issuer_id, self.private_key_path)
        )

    @classmethod
    def from_stored(
        cls,
        stored: StoredCredential,
        source: CredentialSource,
        source_path: Optional[str] = None,
        is_default: bool = False,
    ) -> Credential:
        """Build a resolved credential from a persisted profile."""
        return cls(
            name=stored.name,
            key_id=stored.key_id.strip(),
            issuer_id=stored.issuer_id.strip(),
            private_key_path=stored.private_key_path.strip(),
            source=source,
            source_path=source_path,
            is_default=is_default,
        )


class SignedToken(BaseModel):
    """A signed bearer token bound to one credential. Never persisted."""

    model_config = ConfigDict(frozen=True)

    value: str
    issued_at: datetime
    expires_at: datetime
    credential_name: str

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def is_fresh(self, now: datetime, safety_margin: timedelta) -> bool:
        """Return ``True`` while ``now < expires_at - safety_margin``."""
        return now < self.expires_at - safety_margin


# --- Configuration ---


class ConfigFile(BaseModel):
    """The JSON config document.

    Holds named credential profiles and optional request settings. Unknown
    keys written by other versions are preserved in ``model_extra``.

    Example::

        {
          "default_key_name": "personal",
          "keys": [
            {"name": "personal", "key_id": "ABC123", "issuer_id": "...",
             "private_key_path": "/Users/me/AuthKey_ABC123.p8"}
          ],
          "timeout": "90s"
        }
    """

    model_config = ConfigDict(extra="allow")

    default_key_name: Optional[str] = None
    keys: list[StoredCredential] = Field(default_factory=list)
    timeout: Optional[str] = Field(
        default=None, description="Request timeout, e.g. '30', '90s', '2m'"
    )
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_base_delay: Optional[float] = Field(default=None, ge=0)

    def find(self, name: str) -> Optional[StoredCredential]:
        """Return the first profile named *name*, or ``None``."""
        wanted = name.strip()
        for stored in self.keys:
            if stored.name.strip() == wanted:
                return stored
        return None


class RequestConfig(BaseModel):
    """Effective request settings used by the dispatchers.

    Resolved by :func:`~ascli.config.resolve_request_config` from CLI flags,
    environment variables, and the config file.
    """

    timeout: float = Field(default=30.0, gt=0, description="Seconds per call, retries included")
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)


# --- Rate limits ---


class RateLimitWindow(BaseModel):
    """One quota window parsed from the rate-limit header."""

    limit: Optional[int] = None
    remaining: Optional[int] = None


class RateLimitInfo(BaseModel):
    """All quota windows from a single response header.

    Attributes:
        windows: Window name (e.g. ``user-hour``) to its limit/remaining pair.
        raw: The header value as received.
    """

    windows: dict[str, RateLimitWindow] = Field(default_factory=dict)
    raw: str = ""

    def summary(self) -> str:
        """Render the windows alphabetically, e.g. ``user-hour 3499/3500 remaining``."""
        parts: list[str] = []
        for name in sorted(self.windows):
            window = self.windows[name]
            if window.limit is not None and window.remaining is not None:
                parts.append(f"{name} {window.remaining}/{window.limit} remaining")
            elif window.remaining is not None:
                parts.append(f"{name} {window.remaining} remaining")
            elif window.limit is not None:
                parts.append(f"{name} limit {window.limit}")
        if not parts:
            return "no rate-limit info"
        return "; ".join(parts)

    def low_windows(self, threshold: float = 0.1) -> list[str]:
        """Return names of windows whose remaining share is below *threshold*."""
        low: list[str] = []
        for name in sorted(self.windows):
            window = self.windows[name]
            if window.limit and window.remaining is not None:
                if window.remaining < window.limit * threshold:
                    low.append(name)
        return low

    def is_low(self, threshold: float = 0.1) -> bool:
        """Whether any window is nearly exhausted."""
        return bool(self.low_windows(threshold))


# --- JSON:API documents ---


class Resource(BaseModel):
    """A generic JSON:API resource object."""

    model_config = ConfigDict(extra="allow")

    type: str
    id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    relationships: Optional[dict[str, Any]] = None


class PageLinks(BaseModel):
    """Top-level ``links`` of a JSON:API list document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    self_: Optional[str] = Field(default=None, alias="self")
    next: Optional[str] = None


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """A JSON:API list document, usable with :func:`~ascli.client.pagination.paginate_all`.

    ``Page[Resource]`` covers any list endpoint; resource-specific callers can
    parametrise it with their own attribute models.
    """

    model_config = ConfigDict(extra="allow")

    data: list[T] = Field(default_factory=list)
    links: PageLinks = Field(default_factory=PageLinks)
    meta: Optional[dict[str, Any]] = None

    def next_url(self) -> str:
        """Return the ``links.next`` URL, or ``""`` on the last page."""
        return (self.links.next or "").strip()

    def merge(self, other: Page[T]) -> Page[T]:
        """Return a new page holding this page's items followed by *other*'s."""
        return self.model_copy(
            update={"data": [*self.data, *other.data], "links": other.links}
        )


# --- Doctor ---


class DoctorStatus(str, enum.Enum):
    """Outcome of a single doctor check."""

    OK = "ok"
    INFO = "info"
    WARN = "warn"
    FAIL = "fail"


class DoctorFix(BaseModel):
    """A remediation the fix pass may apply for a finding.

    Attributes:
        action: ``chmod`` sets ``mode`` on every path, ``remove`` deletes them.
        paths: Files the action applies to.
        mode: Target permission bits for ``chmod``.
        fixed_message: Message the check carries once the fix succeeded.
    """

    action: Literal["chmod", "remove"]
    paths: list[str]
    mode: int = 0o600
    fixed_message: str


class DoctorCheck(BaseModel):
    """A single finding. Findings are data: the doctor never raises."""

    status: DoctorStatus
    message: str
    recommendation: Optional[str] = None
    fix_applied: bool = False
    fix: Optional[DoctorFix] = Field(default=None, exclude=True)


class DoctorSection(BaseModel):
    title: str
    checks: list[DoctorCheck] = Field(default_factory=list)


class DoctorSummary(BaseModel):
    ok: int = 0
    info: int = 0
    warnings: int = 0
    errors: int = 0


class DoctorReport(BaseModel):
    """Aggregated findings of one doctor run."""

    sections: list[DoctorSection] = Field(default_factory=list)
    summary: DoctorSummary = Field(default_factory=DoctorSummary)
    recommendations: list[str] = Field(default_factory=list)

    def section(self, title: str) -> Optional[DoctorSection]:
        for section in self.sections:
            if section.title == title:
                return section
        return None


class DoctorOptions(BaseModel):
    fix: bool = False


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
