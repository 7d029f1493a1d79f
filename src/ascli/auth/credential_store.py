"""Credential resolution across the environment, the config file, and the keychain.

:class:`CredentialStore` answers one question for every API call: *which API
key signs this request?* The answer is the first of an ordered list of
:class:`CredentialResolver` strategies that applies:

1. :class:`ExplicitProfileResolver` -- a profile named by the caller
   (``--profile``) or by ``ASC_PROFILE``.
2. :class:`EnvironmentResolver` -- ``ASC_KEY_ID``, ``ASC_ISSUER_ID`` and one
   of ``ASC_PRIVATE_KEY_PATH`` / ``ASC_PRIVATE_KEY`` / ``ASC_PRIVATE_KEY_B64``.
3. :class:`ConfigDefaultResolver` -- the config file's default profile.
4. :class:`KeychainDefaultResolver` -- the keychain's default profile.

Each strategy returns a :class:`~ascli.models.Credential` (resolved), ``None``
(not applicable, try the next one) or raises. Resolution fails closed: a
partially set environment raises
:class:`~ascli.exceptions.IncompleteCredentialError` instead of silently
falling through to a stored profile the operator did not ask for.

See Also:
    :class:`~ascli.auth.signer.TokenSigner` -- turns a credential into a token.
    :func:`~ascli.auth.doctor.doctor` -- audits what this module reads.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ascli import config as config_module
from ascli.auth.keychain import Keychain, is_keychain_bypassed
from ascli.auth.private_key import decode_base64_key, decode_inline_key, stage_private_key
from ascli.exceptions import (
    AmbiguousCredentialError,
    CredentialNotFoundError,
    CredentialsWarning,
    IncompleteCredentialError,
    InvalidPrivateKeyError,
    KeychainUnavailableError,
)
from ascli.models import ConfigFile, Credential, CredentialSource, StoredCredential

logger = logging.getLogger(__name__)

ENV_KEY_ID = "ASC_KEY_ID"
ENV_ISSUER_ID = "ASC_ISSUER_ID"
ENV_PRIVATE_KEY_PATH = "ASC_PRIVATE_KEY_PATH"
ENV_PRIVATE_KEY = "ASC_PRIVATE_KEY"
ENV_PRIVATE_KEY_B64 = "ASC_PRIVATE_KEY_B64"
ENV_PROFILE = "ASC_PROFILE"
ENV_STRICT_AUTH = "ASC_STRICT_AUTH"

ENV_CREDENTIAL_NAME = "env"


def is_strict_auth() -> bool:
    """Whether ``ASC_STRICT_AUTH`` turns soft credential problems into errors."""
    return config_module.env_flag(ENV_STRICT_AUTH)


@dataclass(frozen=True)
class EnvironmentCredentials:
    """Snapshot of the ``ASC_*`` credential variables (whitespace-trimmed)."""

    key_id: str = ""
    issuer_id: str = ""
    private_key_path: str = ""
    private_key: str = ""
    private_key_b64: str = ""

    @classmethod
    def from_environ(cls) -> EnvironmentCredentials:
        def read(name: str) -> str:
            return os.environ.get(name, "").strip()

        return cls(
            key_id=read(ENV_KEY_ID),
            issuer_id=read(ENV_ISSUER_ID),
            private_key_path=read(ENV_PRIVATE_KEY_PATH),
            private_key=read(ENV_PRIVATE_KEY),
            private_key_b64=read(ENV_PRIVATE_KEY_B64),
        )

    @property
    def has_key_material(self) -> bool:
        return bool(self.private_key_path or self.private_key or self.private_key_b64)

    @property
    def provided(self) -> bool:
        """At least one of key id, issuer id, or key material is set."""
        return bool(self.key_id or self.issuer_id or self.has_key_material)

    @property
    def complete(self) -> bool:
        return bool(self.key_id and self.issuer_id and self.has_key_material)

    def missing(self) -> list[str]:
        """Names of the variables (or variable group) still unset."""
        missing: list[str] = []
        if not self.key_id:
            missing.append(ENV_KEY_ID)
        if not self.issuer_id:
            missing.append(ENV_ISSUER_ID)
        if not self.has_key_material:
            missing.append(f"{ENV_PRIVATE_KEY_PATH}/{ENV_PRIVATE_KEY}/{ENV_PRIVATE_KEY_B64}")
        return missing

    def check_not_partial(self) -> None:
        """Raise if some but not all credential variables are set.

        Raises:
            IncompleteCredentialError: Partial environment input.
        """
        if self.provided and not self.complete:
            raise IncompleteCredentialError(
                "Environment credentials are incomplete; missing "
                + ", ".join(self.missing())
                + ". Set the missing variables or unset the partial ones."
            )


@dataclass
class CredentialListing:
    """Result of :meth:`CredentialStore.list_credentials`.

    Attributes:
        credentials: Merged profiles, keychain entries first.
        warning: Set when a source could not be read but the listing is
            still usable (for example, the keychain is unavailable).
    """

    credentials: list[Credential] = field(default_factory=list)
    warning: Optional[CredentialsWarning] = None


# ------------------------------------------------------------------ #
# Resolver strategies
# ------------------------------------------------------------------ #


class CredentialResolver(ABC):
    """One step of the credential precedence chain."""

    name: str = ""

    @abstractmethod
    def resolve(self, store: CredentialStore, profile: Optional[str]) -> Optional[Credential]:
        """Return a credential, ``None`` if this source does not apply, or raise."""
        ...


class ExplicitProfileResolver(CredentialResolver):
    """Resolve a profile named by the caller or by ``ASC_PROFILE``."""

    name = "profile"

    def resolve(self, store: CredentialStore, profile: Optional[str]) -> Optional[Credential]:
        wanted = (profile or "").strip() or os.environ.get(ENV_PROFILE, "").strip()
        if not wanted:
            return None
        # A partial override is an error even when a profile is named.
        env = EnvironmentCredentials.from_environ()
        env.check_not_partial()
        credential = store.find_profile(wanted)
        if store.strict:
            if env.complete and env.key_id != credential.key_id:
                raise AmbiguousCredentialError(
                    f"Profile {wanted!r} (key {credential.key_id}) conflicts with "
                    f"{ENV_KEY_ID}={env.key_id} while {ENV_STRICT_AUTH} is set"
                )
        return credential


class EnvironmentResolver(CredentialResolver):
    """Resolve credentials from ``ASC_*`` environment variables."""

    name = "environment"

    def resolve(self, store: CredentialStore, profile: Optional[str]) -> Optional[Credential]:
        env = EnvironmentCredentials.from_environ()
        if not env.provided:
            return None
        env.check_not_partial()
        return Credential(
            name=ENV_CREDENTIAL_NAME,
            key_id=env.key_id,
            issuer_id=env.issuer_id,
            private_key_path=store.environment_key_path(env),
            source=CredentialSource.ENV,
        )


class ConfigDefaultResolver(CredentialResolver):
    """Resolve the config file's default profile."""

    name = "config"

    def resolve(self, store: CredentialStore, profile: Optional[str]) -> Optional[Credential]:
        cfg = store.load_config()
        default_name = (cfg.default_key_name or "").strip()
        if default_name:
            stored = cfg.find(default_name)
            if stored is None:
                raise CredentialNotFoundError(
                    f"Default profile {default_name!r} is not defined in {store.config_path}"
                )
        elif len(cfg.keys) == 1:
            stored = cfg.keys[0]
        else:
            return None
        return Credential.from_stored(
            stored,
            CredentialSource.CONFIG,
            source_path=str(store.config_path),
            is_default=True,
        )


class KeychainDefaultResolver(CredentialResolver):
    """Resolve the keychain's default profile."""

    name = "keychain"

    def resolve(self, store: CredentialStore, profile: Optional[str]) -> Optional[Credential]:
        if not store.keychain_enabled:
            return None
        try:
            stored = store.keychain.default()
        except KeychainUnavailableError:
            if store.strict:
                raise
            logger.debug("Keychain unavailable; skipping keychain default")
            return None
        if stored is None:
            return None
        return Credential.from_stored(stored, CredentialSource.KEYCHAIN, is_default=True)


DEFAULT_RESOLVERS: tuple[CredentialResolver, ...] = (
    ExplicitProfileResolver(),
    EnvironmentResolver(),
    ConfigDefaultResolver(),
    KeychainDefaultResolver(),
)


# ------------------------------------------------------------------ #
# Store
# ------------------------------------------------------------------ #


class CredentialStore:
    """Resolve, list, and persist credential profiles.

    Args:
        config_path: Config file location; defaults to
            :func:`ascli.config.config_path` (which honours ``ASC_CONFIG_PATH``).
        keychain: Keychain wrapper; defaults to :class:`Keychain`.
        resolvers: Precedence chain; defaults to :data:`DEFAULT_RESOLVERS`.
        strict: Force strict mode; defaults to ``ASC_STRICT_AUTH``.

    Example::

        store = CredentialStore()
        credential = store.resolve()          # default precedence
        credential = store.resolve("work")    # named profile
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        keychain: Optional[Keychain] = None,
        resolvers: Optional[list[CredentialResolver]] = None,
        strict: Optional[bool] = None,
    ) -> None:
        self._config_path = config_path
        self._keychain = keychain or Keychain()
        self._resolvers = list(resolvers) if resolvers is not None else list(DEFAULT_RESOLVERS)
        self._strict = strict
        self._staged_env_keys: dict[str, str] = {}

    @property
    def config_path(self) -> Path:
        return self._config_path or config_module.config_path()

    @property
    def keychain(self) -> Keychain:
        return self._keychain

    @property
    def keychain_enabled(self) -> bool:
        return not is_keychain_bypassed()

    @property
    def strict(self) -> bool:
        return self._strict if self._strict is not None else is_strict_auth()

    def load_config(self) -> ConfigFile:
        return config_module.load_config(self.config_path)

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    def resolve(self, profile: Optional[str] = None) -> Credential:
        """Return the credential that should sign requests.

        Args:
            profile: Explicit profile name; highest precedence.

        Raises:
            IncompleteCredentialError: Partial environment input, or the
                selected profile lacks a key id, issuer id, or key path.
            InvalidPrivateKeyError: The selected key file does not exist.
            CredentialNotFoundError: No source yields a credential.
            AmbiguousCredentialError: Strict mode and conflicting sources.
            KeychainUnavailableError: Strict mode and no keychain.
        """
        for resolver in self._resolvers:
            credential = resolver.resolve(self, profile)
            if credential is None:
                continue
            logger.debug("Resolved credential %r via %s", credential.name, resolver.name)
            return self._ensure_usable(credential)
        raise CredentialNotFoundError(
            "No credentials found. Run `ascli auth login` or set "
            f"{ENV_KEY_ID}, {ENV_ISSUER_ID}, and {ENV_PRIVATE_KEY_PATH}."
        )

    def find_profile(self, name: str) -> Credential:
        """Look up a named profile in the keychain, then the config file.

        Raises:
            CredentialNotFoundError: If neither source has *name*.
            KeychainUnavailableError: Strict mode and no keychain.
        """
        wanted = name.strip()
        if self.keychain_enabled:
            try:
                stored = self._keychain.get(wanted)
            except KeychainUnavailableError:
                if self.strict:
                    raise
                logger.debug("Keychain unavailable; looking up %r in config only", wanted)
            else:
                if stored is not None:
                    return Credential.from_stored(
                        stored,
                        CredentialSource.KEYCHAIN,
                        is_default=self._is_effective_default(wanted),
                    )

        cfg = self.load_config()
        stored = cfg.find(wanted)
        if stored is not None:
            return Credential.from_stored(
                stored,
                CredentialSource.CONFIG,
                source_path=str(self.config_path),
                is_default=(cfg.default_key_name or "").strip() == wanted,
            )
        raise CredentialNotFoundError(f"Profile {wanted!r} not found")

    def environment_key_path(self, env: EnvironmentCredentials) -> str:
        """Return a key path for environment credentials, staging inline material once."""
        if env.private_key_path:
            return str(Path(env.private_key_path).expanduser())
        raw = env.private_key or env.private_key_b64
        staged = self._staged_env_keys.get(raw)
        if staged is None:
            if env.private_key:
                data = decode_inline_key(env.private_key)
            else:
                data = decode_base64_key(env.private_key_b64)
            staged = str(stage_private_key(data))
            self._staged_env_keys[raw] = staged
        return staged

    def get_default_credentials(self) -> Optional[Credential]:
        """Return the stored default (config file, then keychain), ignoring the environment."""
        credential = ConfigDefaultResolver().resolve(self, None)
        if credential is None:
            credential = KeychainDefaultResolver().resolve(self, None)
        return credential

    # ------------------------------------------------------------------ #
    # Listing
    # ------------------------------------------------------------------ #

    def list_credentials(self) -> CredentialListing:
        """Merge keychain and config profiles without duplicates.

        A keychain that cannot be opened does not fail the listing; a
        :class:`~ascli.exceptions.CredentialsWarning` is attached instead.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        listing = CredentialListing()
        cfg = self.load_config()
        config_default = (cfg.default_key_name or "").strip()
        if not config_default and len(cfg.keys) == 1:
            config_default = cfg.keys[0].name.strip()

        keychain_entries: list[StoredCredential] = []
        keychain_default: Optional[str] = None
        if self.keychain_enabled:
            try:
                keychain_entries, keychain_default = self._keychain.list_credentials()
            except KeychainUnavailableError as exc:
                listing.warning = CredentialsWarning(
                    f"System keychain unavailable ({exc}); showing config file credentials only"
                )

        # Config default outranks the keychain default, as in resolve().
        effective_default = config_default or keychain_default

        seen: set[str] = set()
        for stored in keychain_entries:
            name = stored.name.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            listing.credentials.append(
                Credential.from_stored(
                    stored, CredentialSource.KEYCHAIN, is_default=name == effective_default
                )
            )
        for stored in cfg.keys:
            name = stored.name.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            listing.credentials.append(
                Credential.from_stored(
                    stored,
                    CredentialSource.CONFIG,
                    source_path=str(self.config_path),
                    is_default=name == effective_default,
                )
            )
        return listing

    # ------------------------------------------------------------------ #
    # Persistence (login / logout)
    # ------------------------------------------------------------------ #

    def save_credential(
        self,
        stored: StoredCredential,
        use_keychain: bool = True,
        make_default: bool = False,
    ) -> CredentialSource:
        """Persist a profile in the keychain, or the config file when bypassed.

        Returns:
            Where the profile was written.

        Raises:
            KeychainUnavailableError: If the keychain was requested but
                cannot be opened.
        """
        if use_keychain and self.keychain_enabled:
            self._keychain.save(stored, make_default=make_default)
            return CredentialSource.KEYCHAIN

        cfg = self.load_config()
        cfg.keys = [k for k in cfg.keys if k.name.strip() != stored.name.strip()]
        cfg.keys.append(stored)
        if make_default or not cfg.default_key_name:
            cfg.default_key_name = stored.name
        config_module.save_config(cfg, self.config_path)
        return CredentialSource.CONFIG

    def delete_credential(self, name: str) -> bool:
        """Remove *name* from every source. Returns ``True`` if anything was removed."""
        removed = False
        if self.keychain_enabled:
            try:
                removed = self._keychain.delete(name)
            except KeychainUnavailableError:
                if self.strict:
                    raise
        cfg = self.load_config()
        remaining = [k for k in cfg.keys if k.name.strip() != name]
        if len(remaining) != len(cfg.keys):
            cfg.keys = remaining
            if cfg.default_key_name == name:
                cfg.default_key_name = None
            config_module.save_config(cfg, self.config_path)
            removed = True
        return removed

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _ensure_usable(self, credential: Credential) -> Credential:
        if not credential.is_complete:
            raise IncompleteCredentialError(
                f"Profile {credential.name!r} is incomplete (missing key ID, issuer ID, "
                "or private key path). Re-run `ascli auth login`."
            )
        if not Path(credential.private_key_path).is_file():
            raise InvalidPrivateKeyError(
                f"Private key for profile {credential.name!r} not found at "
                f"{credential.private_key_path}"
            )
        return credential

    def _is_effective_default(self, name: str) -> bool:
        try:
            default = self.get_default_credentials()
        except (CredentialNotFoundError, KeychainUnavailableError):
            return False
        return default is not None and default.name == name
