"""Shared test fixtures for ascli.

Provides isolated config and temp directories, generated private keys, an
in-memory keyring backend, output state management, and a CLI runner.
These fixtures are automatically discovered by pytest and available to all
test modules without explicit imports.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from ascli.auth.keychain import Keychain
from ascli.models import Credential, CredentialSource
from ascli.output import OutputFormat, OutputManager, reset_output, set_output


ASC_ENV_VARS = [
    "ASC_KEY_ID",
    "ASC_ISSUER_ID",
    "ASC_PRIVATE_KEY_PATH",
    "ASC_PRIVATE_KEY",
    "ASC_PRIVATE_KEY_B64",
    "ASC_PROFILE",
    "ASC_BYPASS_KEYCHAIN",
    "ASC_STRICT_AUTH",
    "ASC_CONFIG_PATH",
    "ASC_TIMEOUT",
    "ASC_MAX_RETRIES",
]


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during a
    test, the cached references become stale once the test finishes.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Clear ASC_* variables, bypass the real keychain, and use a private temp dir.

    Staged keys and the doctor's orphan scan both use the temp directory,
    so every test gets its own.
    """
    for var in ASC_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ASC_BYPASS_KEYCHAIN", "1")

    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    monkeypatch.setenv("TMPDIR", str(temp_dir))
    monkeypatch.setattr(tempfile, "tempdir", str(temp_dir))
    return temp_dir


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path
    and points ASC_CONFIG_PATH at a (not yet existing) config file there.

    Returns:
        The config file path.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    config_file = tmp_path / "config" / "ascli" / "config.json"
    monkeypatch.setenv("ASC_CONFIG_PATH", str(config_file))
    monkeypatch.chdir(tmp_path)
    return config_file


# ---------------------------------------------------------------------------
# Private keys
# ---------------------------------------------------------------------------


def write_pem(path: Path, key: object, mode: int = 0o600) -> Path:
    """Write *key* as an unencrypted PKCS#8 PEM file with *mode*."""
    pem = key.private_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(pem)
    os.chmod(path, mode)
    return path


@pytest.fixture
def p256_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def key_file(tmp_path: Path, p256_key: ec.EllipticCurvePrivateKey) -> Path:
    """A valid App Store Connect style key: PKCS#8 P-256, mode 0600."""
    return write_pem(tmp_path / "keys" / "AuthKey_ABC123.p8", p256_key)


@pytest.fixture
def p384_key_file(tmp_path: Path) -> Path:
    return write_pem(tmp_path / "keys" / "p384.p8", ec.generate_private_key(ec.SECP384R1()))


@pytest.fixture
def rsa_key_file(tmp_path: Path) -> Path:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return write_pem(tmp_path / "keys" / "rsa.p8", key)


@pytest.fixture
def credential(key_file: Path) -> Credential:
    return Credential(
        name="work",
        key_id="ABC123",
        issuer_id="69a6de7e-0000-47e3-e053-5b8c7c11a4d1",
        private_key_path=str(key_file),
        source=CredentialSource.CONFIG,
    )


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps items in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.items: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str):
        return self.items.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.items[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.items[(service, username)]
        except KeyError:
            raise PasswordDeleteError(username) from None


@pytest.fixture
def memory_keyring() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def keychain(memory_keyring: MemoryKeyring, monkeypatch: pytest.MonkeyPatch) -> Keychain:
    """A working keychain backed by :class:`MemoryKeyring`, with bypass disabled."""
    monkeypatch.delenv("ASC_BYPASS_KEYCHAIN", raising=False)
    return Keychain(backend=memory_keyring)


@pytest.fixture
def unavailable_keychain(monkeypatch: pytest.MonkeyPatch) -> Keychain:
    """A keychain whose backend is keyring's ``fail`` backend, with bypass disabled."""
    from keyring.backends import fail

    monkeypatch.delenv("ASC_BYPASS_KEYCHAIN", raising=False)
    return Keychain(backend=fail.Keyring())


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True, no_color=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
