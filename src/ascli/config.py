"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for ascli:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.ascli/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Config file** -- a single :class:`~ascli.models.ConfigFile` JSON
  document holding named credential profiles and request settings. Its
  location can be overridden with ``ASC_CONFIG_PATH``. See
  :func:`config_path`, :func:`load_config`, :func:`save_config`.
* **Request settings** -- :func:`resolve_request_config` merges CLI flags,
  environment variables, and the config file into a
  :class:`~ascli.models.RequestConfig`.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) and ``0o600`` permissions, so that a crash never
leaves a half-written config and the file is never world-readable, even
momentarily.

Path helpers here never create directories: ``ascli auth doctor`` inspects
these locations and must not change them by looking.
"""

from __future__ import annotations

import json
import os
import platform
import re
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ascli.exceptions import ConfigError
from ascli.models import ConfigFile, RequestConfig

_APP_NAME = "ascli"
_CONFIG_FILENAME = "config.json"

ENV_CONFIG_PATH = "ASC_CONFIG_PATH"
ENV_TIMEOUT = "ASC_TIMEOUT"
ENV_MAX_RETRIES = "ASC_MAX_RETRIES"

CONFIG_FILE_MODE = 0o600
CONFIG_DIR_MODE = 0o700

_TRUTHY = {"1", "true", "yes", "y", "on"}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory.

    On Linux/BSD: ``$XDG_CONFIG_HOME/ascli/`` (default ``~/.config/ascli/``).
    On macOS/Windows: ``~/.ascli/``.
    """
    if _is_xdg_platform():
        return _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    return _fallback_base_dir()


def get_data_dir() -> Path:
    """Return the data directory used for crash logs.

    On Linux/BSD: ``$XDG_DATA_HOME/ascli/`` (default ``~/.local/share/ascli/``).
    On macOS/Windows: ``~/.ascli/logs/``.
    """
    if _is_xdg_platform():
        return _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    return _fallback_base_dir() / "logs"


def config_path() -> Path:
    """Return the config file path, honouring ``ASC_CONFIG_PATH``.

    Raises:
        ConfigError: If ``ASC_CONFIG_PATH`` points at a directory.
    """
    override = os.environ.get(ENV_CONFIG_PATH, "").strip()
    if override:
        path = Path(override).expanduser()
        if path.is_dir():
            raise ConfigError(f"{ENV_CONFIG_PATH} points at a directory: {path}")
        return path
    return get_config_dir() / _CONFIG_FILENAME


def env_flag(name: str) -> bool:
    """Return ``True`` when the environment variable *name* holds a truthy value."""
    return os.environ.get(name, "").strip().lower() in _TRUTHY


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str, mode: int = CONFIG_FILE_MODE) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    Permissions are restricted to *mode* before any content is written.
    On any failure the temp file is cleaned up.
    """
    path.parent.mkdir(mode=CONFIG_DIR_MODE, parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Config file ---


def load_config(path: Optional[Path] = None) -> ConfigFile:
    """Load the config file.

    Args:
        path: Explicit location; defaults to :func:`config_path`.

    Returns:
        The deserialised :class:`~ascli.models.ConfigFile`. If the file does
        not exist, an empty instance is returned.

    Raises:
        ConfigError: If the file exists but cannot be read, contains invalid
            JSON, or fails validation.
    """
    path = path or config_path()
    if not path.is_file():
        return ConfigFile()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if not text.strip():
        return ConfigFile()
    try:
        return ConfigFile.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(f"Invalid config file at {path}: {exc}") from exc


def save_config(config: ConfigFile, path: Optional[Path] = None) -> Path:
    """Persist the config file atomically with ``0o600`` permissions.

    Args:
        config: The document to write.
        path: Explicit location; defaults to :func:`config_path`.

    Returns:
        The path that was written.
    """
    path = path or config_path()
    data = config.model_dump(mode="json", exclude_none=True)
    _atomic_write(path, json.dumps(data, indent=2) + "\n")
    return path


# --- Request settings ---

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {None: 1.0, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse ``"30"``, ``"90s"``, ``"2m"``, ``"500ms"`` or ``"1h"`` into seconds.

    Raises:
        ConfigError: If *value* is not a positive duration.
    """
    match = _DURATION.match(value or "")
    if match is None:
        raise ConfigError(f"Invalid duration: {value!r} (expected e.g. 30, 90s, 2m)")
    seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def resolve_request_config(
    cli_timeout: Optional[str] = None,
    config: Optional[ConfigFile] = None,
) -> RequestConfig:
    """Resolve request settings with the full precedence chain.

    Precedence (high to low):
        1. CLI flags (``cli_timeout``)
        2. Environment variables (``ASC_TIMEOUT``, ``ASC_MAX_RETRIES``)
        3. Config file (``timeout``, ``max_retries``, ``retry_base_delay``)
        4. Defaults

    Args:
        cli_timeout: Value of the ``--timeout`` flag, if given.
        config: Already-loaded config file; loaded from disk when ``None``.

    Raises:
        ConfigError: If any source holds an invalid value.
    """
    # 4 + 3. Defaults overlaid with the config file
    config = config if config is not None else load_config()
    settings = RequestConfig()
    if config.timeout:
        settings.timeout = parse_duration(config.timeout)
    if config.max_retries is not None:
        settings.max_retries = config.max_retries
    if config.retry_base_delay is not None:
        settings.retry_base_delay = config.retry_base_delay

    # 2. Environment
    env_timeout = os.environ.get(ENV_TIMEOUT, "").strip()
    if env_timeout:
        settings.timeout = parse_duration(env_timeout)
    env_retries = os.environ.get(ENV_MAX_RETRIES, "").strip()
    if env_retries:
        try:
            retries = int(env_retries)
        except ValueError:
            raise ConfigError(f"{ENV_MAX_RETRIES} must be an integer, got {env_retries!r}") from None
        if retries < 0:
            raise ConfigError(f"{ENV_MAX_RETRIES} must not be negative, got {retries}")
        settings.max_retries = retries

    # 1. CLI flag (highest precedence)
    if cli_timeout:
        settings.timeout = parse_duration(cli_timeout)

    return settings
