"""System keychain storage for credential profiles, backed by :mod:`keyring`.

Each profile is stored as one keychain item (service ``ascli``, account =
profile name) whose secret is the JSON form of a
:class:`~ascli.models.StoredCredential`. :mod:`keyring` has no portable way
to enumerate items, so an additional index item keeps the list of profile
names and which of them is the default.

Setting ``ASC_BYPASS_KEYCHAIN=1`` disables the keychain entirely; this is
the usual setting on CI machines and in containers where no keychain
daemon runs.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import keyring
from keyring.backend import KeyringBackend
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from ascli.config import env_flag
from ascli.exceptions import KeychainUnavailableError
from ascli.models import StoredCredential

logger = logging.getLogger(__name__)

ENV_BYPASS_KEYCHAIN = "ASC_BYPASS_KEYCHAIN"
KEYCHAIN_SERVICE = "ascli"
_INDEX_ACCOUNT = "__profiles__"


def is_keychain_bypassed() -> bool:
    """Whether ``ASC_BYPASS_KEYCHAIN`` disables keychain access."""
    return env_flag(ENV_BYPASS_KEYCHAIN)


class Keychain:
    """Profile storage in the platform keychain.

    Args:
        service: Keychain service name items are stored under.
        backend: Explicit :class:`keyring.backend.KeyringBackend`; defaults
            to whatever :func:`keyring.get_keyring` selects.
    """

    def __init__(
        self,
        service: str = KEYCHAIN_SERVICE,
        backend: Optional[KeyringBackend] = None,
    ) -> None:
        self._service = service
        self._backend = backend

    # ------------------------------------------------------------------ #
    # Availability
    # ------------------------------------------------------------------ #

    def open(self) -> KeyringBackend:
        """Return the usable backend.

        Raises:
            KeychainUnavailableError: If keyring selected its ``fail``
                backend or the backend reports a non-positive priority.
        """
        backend = self._backend or keyring.get_keyring()
        if isinstance(backend, fail.Keyring):
            raise KeychainUnavailableError("No system keychain backend is available")
        try:
            priority = float(backend.priority)
        except Exception as exc:
            raise KeychainUnavailableError(f"System keychain is unusable: {exc}") from exc
        if priority <= 0:
            raise KeychainUnavailableError(
                f"System keychain backend {type(backend).__name__} is not usable"
            )
        return backend

    def is_available(self) -> bool:
        try:
            self.open()
        except KeychainUnavailableError:
            return False
        return True

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def list_credentials(self) -> tuple[list[StoredCredential], Optional[str]]:
        """Return all stored profiles and the default profile name.

        Raises:
            KeychainUnavailableError: If the keychain cannot be read.
        """
        backend = self.open()
        index = self._read_index(backend)
        stored: list[StoredCredential] = []
        for name in index["names"]:
            entry = self._read_entry(backend, name)
            if entry is not None:
                stored.append(entry)
        return stored, index["default"]

    def get(self, name: str) -> Optional[StoredCredential]:
        """Return the profile named *name*, or ``None``."""
        return self._read_entry(self.open(), name)

    def default(self) -> Optional[StoredCredential]:
        """Return the default profile, or ``None`` when none is marked."""
        backend = self.open()
        default_name = self._read_index(backend)["default"]
        if not default_name:
            return None
        return self._read_entry(backend, default_name)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def save(self, stored: StoredCredential, make_default: bool = False) -> None:
        """Store *stored*, replacing any profile with the same name."""
        backend = self.open()
        index = self._read_index(backend)
        payload = stored.model_dump_json()
        try:
            backend.set_password(self._service, stored.name, payload)
        except KeyringError as exc:
            raise KeychainUnavailableError(f"Failed to write keychain item: {exc}") from exc
        if stored.name not in index["names"]:
            index["names"].append(stored.name)
        if make_default or not index["default"]:
            index["default"] = stored.name
        self._write_index(backend, index)

    def delete(self, name: str) -> bool:
        """Remove the profile named *name*. Returns ``False`` if it did not exist."""
        backend = self.open()
        index = self._read_index(backend)
        existed = name in index["names"]
        try:
            backend.delete_password(self._service, name)
        except PasswordDeleteError:
            pass
        except KeyringError as exc:
            raise KeychainUnavailableError(f"Failed to delete keychain item: {exc}") from exc
        if existed:
            index["names"].remove(name)
            if index["default"] == name:
                index["default"] = None
            self._write_index(backend, index)
        return existed

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _get(self, backend: KeyringBackend, account: str) -> Optional[str]:
        try:
            return backend.get_password(self._service, account)
        except KeyringError as exc:
            raise KeychainUnavailableError(f"Failed to read keychain: {exc}") from exc

    def _read_index(self, backend: KeyringBackend) -> dict[str, Any]:
        raw = self._get(backend, _INDEX_ACCOUNT)
        index: dict[str, Any] = {"names": [], "default": None}
        if not raw:
            return index
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt keychain profile index")
            return index
        names = data.get("names") if isinstance(data, dict) else None
        if isinstance(names, list):
            index["names"] = [n for n in names if isinstance(n, str) and n.strip()]
        default = data.get("default") if isinstance(data, dict) else None
        if isinstance(default, str) and default in index["names"]:
            index["default"] = default
        return index

    def _write_index(self, backend: KeyringBackend, index: dict[str, Any]) -> None:
        try:
            backend.set_password(self._service, _INDEX_ACCOUNT, json.dumps(index))
        except KeyringError as exc:
            raise KeychainUnavailableError(f"Failed to write keychain index: {exc}") from exc

    def _read_entry(self, backend: KeyringBackend, name: str) -> Optional[StoredCredential]:
        raw = self._get(backend, name)
        if not raw:
            return None
        try:
            return StoredCredential.model_validate_json(raw)
        except ValueError:
            logger.warning("Ignoring corrupt keychain item for profile %s", name)
            return None
