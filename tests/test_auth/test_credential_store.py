"""Tests for credential resolution, listing, and persistence."""

from __future__ import annotations

import base64
import os
import stat
from pathlib import Path

import pytest

from ascli.auth.credential_store import CredentialStore, EnvironmentCredentials
from ascli.auth.keychain import Keychain
from ascli.auth.private_key import TEMP_KEY_PREFIX, TEMP_KEY_SUFFIX, is_staged
from ascli.config import load_config, save_config
from ascli.exceptions import (
    AmbiguousCredentialError,
    CredentialNotFoundError,
    IncompleteCredentialError,
    InvalidPrivateKeyError,
    KeychainUnavailableError,
)
from ascli.models import ConfigFile, CredentialSource, StoredCredential


ISSUER = "69a6de7e-0000-47e3-e053-5b8c7c11a4d1"


def _stored(name: str, key_file: Path, key_id: str = "KEY1") -> StoredCredential:
    return StoredCredential(
        name=name, key_id=key_id, issuer_id=ISSUER, private_key_path=str(key_file)
    )


def _write_config(path: Path, *keys: StoredCredential, default: str | None = None) -> None:
    save_config(ConfigFile(default_key_name=default, keys=list(keys)), path)


def _set_env(monkeypatch: pytest.MonkeyPatch, key_file: Path) -> None:
    monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
    monkeypatch.setenv("ASC_ISSUER_ID", ISSUER)
    monkeypatch.setenv("ASC_PRIVATE_KEY_PATH", str(key_file))


# ---------------------------------------------------------------------------
# Environment credentials
# ---------------------------------------------------------------------------


class TestEnvironmentResolution:
    def test_complete_env_resolves(self, isolated_config, key_file, monkeypatch) -> None:
        _set_env(monkeypatch, key_file)
        credential = CredentialStore(config_path=isolated_config).resolve()
        assert credential.source == CredentialSource.ENV
        assert credential.name == "env"
        assert credential.key_id == "ENVKEY"
        assert credential.private_key_path == str(key_file)

    def test_env_beats_config_default(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file), default="work")
        _set_env(monkeypatch, key_file)
        credential = CredentialStore(config_path=isolated_config).resolve()
        assert credential.source == CredentialSource.ENV

    @pytest.mark.parametrize(
        "var,value",
        [
            ("ASC_KEY_ID", "ENVKEY"),
            ("ASC_ISSUER_ID", ISSUER),
            ("ASC_PRIVATE_KEY_PATH", "/tmp/AuthKey.p8"),
            ("ASC_PRIVATE_KEY_B64", "Zm9v"),
        ],
    )
    def test_single_env_var_is_incomplete(
        self, isolated_config, key_file, monkeypatch, var, value
    ) -> None:
        # A complete config default exists; it must not be used as a fallback.
        _write_config(isolated_config, _stored("work", key_file), default="work")
        monkeypatch.setenv(var, value)
        with pytest.raises(IncompleteCredentialError):
            CredentialStore(config_path=isolated_config).resolve()

    def test_incomplete_message_names_missing_vars(self, isolated_config, monkeypatch) -> None:
        monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
        with pytest.raises(IncompleteCredentialError, match="ASC_ISSUER_ID"):
            CredentialStore(config_path=isolated_config).resolve()

    def test_blank_env_vars_are_ignored(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file))
        monkeypatch.setenv("ASC_KEY_ID", "   ")
        credential = CredentialStore(config_path=isolated_config).resolve()
        assert credential.name == "work"

    def test_inline_key_is_staged(self, isolated_config, key_file, monkeypatch) -> None:
        monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
        monkeypatch.setenv("ASC_ISSUER_ID", ISSUER)
        pem = key_file.read_text()
        monkeypatch.setenv("ASC_PRIVATE_KEY", pem.replace("\n", "\\n"))

        credential = CredentialStore(config_path=isolated_config).resolve()
        staged = Path(credential.private_key_path)
        assert staged.name.startswith(TEMP_KEY_PREFIX)
        assert staged.name.endswith(TEMP_KEY_SUFFIX)
        assert stat.S_IMODE(staged.stat().st_mode) == 0o600
        assert staged.read_text().strip() == pem.strip()
        assert is_staged(staged)

    def test_base64_key_is_staged_once(self, isolated_config, key_file, monkeypatch) -> None:
        monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
        monkeypatch.setenv("ASC_ISSUER_ID", ISSUER)
        monkeypatch.setenv("ASC_PRIVATE_KEY_B64", base64.b64encode(key_file.read_bytes()).decode())

        store = CredentialStore(config_path=isolated_config)
        first = store.resolve()
        second = store.resolve()
        assert first.private_key_path == second.private_key_path
        assert Path(first.private_key_path).read_bytes() == key_file.read_bytes()

    def test_invalid_inline_key_is_rejected(self, isolated_config, monkeypatch) -> None:
        monkeypatch.setenv("ASC_KEY_ID", "ENVKEY")
        monkeypatch.setenv("ASC_ISSUER_ID", ISSUER)
        monkeypatch.setenv("ASC_PRIVATE_KEY", "not a key")
        with pytest.raises(InvalidPrivateKeyError):
            CredentialStore(config_path=isolated_config).resolve()

    def test_environment_snapshot(self, monkeypatch) -> None:
        monkeypatch.setenv("ASC_ISSUER_ID", f"  {ISSUER}  ")
        env = EnvironmentCredentials.from_environ()
        assert env.issuer_id == ISSUER
        assert env.provided
        assert not env.complete
        assert env.missing()[0] == "ASC_KEY_ID"


# ---------------------------------------------------------------------------
# Stored profiles
# ---------------------------------------------------------------------------


class TestProfileResolution:
    def test_explicit_profile_beats_env(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file), _stored("home", key_file, "K2"))
        _set_env(monkeypatch, key_file)
        credential = CredentialStore(config_path=isolated_config).resolve("home")
        assert credential.name == "home"
        assert credential.key_id == "K2"
        assert credential.source == CredentialSource.CONFIG
        assert credential.source_path == str(isolated_config)

    def test_profile_from_environment_selector(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file), _stored("home", key_file, "K2"))
        monkeypatch.setenv("ASC_PROFILE", "home")
        assert CredentialStore(config_path=isolated_config).resolve().name == "home"

    def test_partial_env_not_ignored_with_profile_selector(
        self, isolated_config, key_file, monkeypatch
    ) -> None:
        _write_config(isolated_config, _stored("work", key_file, "STORED1"))
        monkeypatch.setenv("ASC_PROFILE", "work")
        monkeypatch.setenv("ASC_KEY_ID", "OVERRIDE9")
        with pytest.raises(IncompleteCredentialError, match="ASC_ISSUER_ID"):
            CredentialStore(config_path=isolated_config).resolve()

    def test_partial_env_not_ignored_with_explicit_profile(
        self, isolated_config, key_file, monkeypatch
    ) -> None:
        _write_config(isolated_config, _stored("work", key_file))
        monkeypatch.setenv("ASC_ISSUER_ID", ISSUER)
        with pytest.raises(IncompleteCredentialError):
            CredentialStore(config_path=isolated_config).resolve("work")

    def test_unknown_profile(self, isolated_config, key_file) -> None:
        _write_config(isolated_config, _stored("work", key_file))
        with pytest.raises(CredentialNotFoundError, match="missing"):
            CredentialStore(config_path=isolated_config).resolve("missing")

    def test_config_default(self, isolated_config, key_file) -> None:
        _write_config(
            isolated_config, _stored("work", key_file), _stored("home", key_file, "K2"), default="home"
        )
        credential = CredentialStore(config_path=isolated_config).resolve()
        assert credential.name == "home"
        assert credential.is_default

    def test_single_profile_is_implicit_default(self, isolated_config, key_file) -> None:
        _write_config(isolated_config, _stored("work", key_file))
        assert CredentialStore(config_path=isolated_config).resolve().name == "work"

    def test_several_profiles_without_default(self, isolated_config, key_file) -> None:
        _write_config(isolated_config, _stored("work", key_file), _stored("home", key_file))
        with pytest.raises(CredentialNotFoundError):
            CredentialStore(config_path=isolated_config).resolve()

    def test_dangling_default(self, isolated_config, key_file) -> None:
        _write_config(isolated_config, _stored("work", key_file), default="gone")
        with pytest.raises(CredentialNotFoundError, match="gone"):
            CredentialStore(config_path=isolated_config).resolve()

    def test_nothing_configured(self, isolated_config) -> None:
        with pytest.raises(CredentialNotFoundError, match="auth login"):
            CredentialStore(config_path=isolated_config).resolve()

    def test_incomplete_profile(self, isolated_config, key_file) -> None:
        _write_config(isolated_config, StoredCredential(name="half", key_id="K", private_key_path=str(key_file)))
        with pytest.raises(IncompleteCredentialError, match="half"):
            CredentialStore(config_path=isolated_config).resolve("half")

    def test_missing_key_file(self, isolated_config, tmp_path) -> None:
        _write_config(isolated_config, _stored("work", tmp_path / "nope.p8"))
        with pytest.raises(InvalidPrivateKeyError, match="not found"):
            CredentialStore(config_path=isolated_config).resolve()


class TestKeychainResolution:
    def test_keychain_default_used_last(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("kc", key_file))
        credential = CredentialStore(config_path=isolated_config, keychain=keychain).resolve()
        assert credential.name == "kc"
        assert credential.source == CredentialSource.KEYCHAIN

    def test_config_default_beats_keychain_default(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("kc", key_file))
        _write_config(isolated_config, _stored("cfg", key_file), default="cfg")
        credential = CredentialStore(config_path=isolated_config, keychain=keychain).resolve()
        assert credential.name == "cfg"

    def test_named_profile_prefers_keychain(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("work", key_file, "FROM_KC"))
        _write_config(isolated_config, _stored("work", key_file, "FROM_CFG"))
        credential = CredentialStore(config_path=isolated_config, keychain=keychain).resolve("work")
        assert credential.key_id == "FROM_KC"

    def test_unavailable_keychain_degrades(self, isolated_config, key_file, unavailable_keychain) -> None:
        _write_config(isolated_config, _stored("work", key_file))
        store = CredentialStore(config_path=isolated_config, keychain=unavailable_keychain)
        assert store.resolve().name == "work"
        assert store.resolve("work").name == "work"

    def test_bypass_ignores_keychain(self, isolated_config, key_file, memory_keyring, monkeypatch) -> None:
        keychain = Keychain(backend=memory_keyring)
        keychain.save(_stored("kc", key_file))
        monkeypatch.setenv("ASC_BYPASS_KEYCHAIN", "1")
        with pytest.raises(CredentialNotFoundError):
            CredentialStore(config_path=isolated_config, keychain=keychain).resolve()


class TestStrictMode:
    def test_unavailable_keychain_is_fatal(self, isolated_config, unavailable_keychain, monkeypatch) -> None:
        monkeypatch.setenv("ASC_STRICT_AUTH", "1")
        store = CredentialStore(config_path=isolated_config, keychain=unavailable_keychain)
        with pytest.raises(KeychainUnavailableError):
            store.resolve()

    def test_conflicting_env_and_profile(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file, "PROFILEKEY"))
        _set_env(monkeypatch, key_file)
        monkeypatch.setenv("ASC_STRICT_AUTH", "1")
        with pytest.raises(AmbiguousCredentialError):
            CredentialStore(config_path=isolated_config).resolve("work")

    def test_conflict_ignored_without_strict(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file, "PROFILEKEY"))
        _set_env(monkeypatch, key_file)
        credential = CredentialStore(config_path=isolated_config).resolve("work")
        assert credential.key_id == "PROFILEKEY"

    def test_strict_constructor_flag(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("work", key_file, "PROFILEKEY"))
        _set_env(monkeypatch, key_file)
        with pytest.raises(AmbiguousCredentialError):
            CredentialStore(config_path=isolated_config, strict=True).resolve("work")


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListCredentials:
    def test_merges_without_duplicates(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("shared", key_file, "FROM_KC"))
        keychain.save(_stored("kc-only", key_file))
        _write_config(isolated_config, _stored("shared", key_file, "FROM_CFG"), _stored("cfg-only", key_file))

        listing = CredentialStore(config_path=isolated_config, keychain=keychain).list_credentials()
        names = [c.name for c in listing.credentials]
        assert sorted(names) == ["cfg-only", "kc-only", "shared"]
        shared = next(c for c in listing.credentials if c.name == "shared")
        assert shared.key_id == "FROM_KC"
        assert shared.source == CredentialSource.KEYCHAIN
        assert listing.warning is None

    def test_at_most_one_default(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("kc", key_file), make_default=True)
        _write_config(isolated_config, _stored("cfg", key_file), default="cfg")
        listing = CredentialStore(config_path=isolated_config, keychain=keychain).list_credentials()
        defaults = [c.name for c in listing.credentials if c.is_default]
        assert defaults == ["cfg"]

    def test_unavailable_keychain_attaches_warning(
        self, isolated_config, key_file, unavailable_keychain
    ) -> None:
        _write_config(isolated_config, _stored("cfg", key_file))
        listing = CredentialStore(
            config_path=isolated_config, keychain=unavailable_keychain
        ).list_credentials()
        assert [c.name for c in listing.credentials] == ["cfg"]
        assert listing.warning is not None
        assert "keychain" in str(listing.warning).lower()

    def test_get_default_ignores_environment(self, isolated_config, key_file, monkeypatch) -> None:
        _write_config(isolated_config, _stored("cfg", key_file))
        _set_env(monkeypatch, key_file)
        default = CredentialStore(config_path=isolated_config).get_default_credentials()
        assert default is not None
        assert default.name == "cfg"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    def test_save_to_config_when_bypassed(self, isolated_config, key_file) -> None:
        store = CredentialStore(config_path=isolated_config)
        source = store.save_credential(_stored("work", key_file))
        assert source == CredentialSource.CONFIG
        assert stat.S_IMODE(os.stat(isolated_config).st_mode) == 0o600
        cfg = load_config(isolated_config)
        assert cfg.default_key_name == "work"
        assert cfg.find("work") is not None

    def test_save_replaces_same_name(self, isolated_config, key_file) -> None:
        store = CredentialStore(config_path=isolated_config)
        store.save_credential(_stored("work", key_file, "OLD"))
        store.save_credential(_stored("work", key_file, "NEW"))
        cfg = load_config(isolated_config)
        assert [k.key_id for k in cfg.keys] == ["NEW"]

    def test_save_to_keychain(self, isolated_config, key_file, keychain) -> None:
        store = CredentialStore(config_path=isolated_config, keychain=keychain)
        assert store.save_credential(_stored("work", key_file)) == CredentialSource.KEYCHAIN
        assert not isolated_config.exists()
        assert keychain.get("work") is not None

    def test_delete_from_all_sources(self, isolated_config, key_file, keychain) -> None:
        keychain.save(_stored("work", key_file))
        _write_config(isolated_config, _stored("work", key_file), default="work")
        store = CredentialStore(config_path=isolated_config, keychain=keychain)
        assert store.delete_credential("work") is True
        assert keychain.get("work") is None
        cfg = load_config(isolated_config)
        assert cfg.keys == []
        assert cfg.default_key_name is None

    def test_delete_unknown(self, isolated_config) -> None:
        assert CredentialStore(config_path=isolated_config).delete_credential("nope") is False
