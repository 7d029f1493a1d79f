"""Loading and staging of App Store Connect private keys.

App Store Connect API keys are ECDSA P-256 keys delivered as PKCS#8 PEM
``.p8`` files. :func:`load_private_key` accepts exactly that (SEC1
``EC PRIVATE KEY`` PEM is tolerated since it is the same key material)
and rejects anything else with
:class:`~ascli.exceptions.InvalidPrivateKeyError`; keys are never
converted between curves or algorithms.

Key material supplied inline (``ASC_PRIVATE_KEY``) or base64-encoded
(``ASC_PRIVATE_KEY_B64``) is staged to a ``0600`` temp file named
``asc-key-*.p8`` so that the rest of the system only deals with paths.
Staged files are removed at interpreter exit; files with that pattern that
outlive their process are reported by ``ascli auth doctor``.
"""

from __future__ import annotations

import atexit
import base64
import binascii
import logging
import os
import tempfile
import threading
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ascli.exceptions import InvalidPrivateKeyError

logger = logging.getLogger(__name__)

TEMP_KEY_PREFIX = "asc-key-"
TEMP_KEY_SUFFIX = ".p8"

_staged: set[str] = set()
_staged_lock = threading.Lock()


def parse_private_key(data: bytes, label: str = "private key") -> ec.EllipticCurvePrivateKey:
    """Parse PEM *data* into a P-256 private key.

    Args:
        data: PEM-encoded key bytes.
        label: Description used in error messages (usually the file path).

    Raises:
        InvalidPrivateKeyError: If the data is not PEM, is encrypted, or is
            not an ECDSA key on the P-256 curve.
    """
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise InvalidPrivateKeyError(f"{label}: not a valid PEM private key ({exc})") from exc
    except Exception as exc:  # cryptography raises UnsupportedAlgorithm for exotic keys
        raise InvalidPrivateKeyError(f"{label}: unsupported private key ({exc})") from exc

    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise InvalidPrivateKeyError(
            f"{label}: expected an ECDSA private key, got {type(key).__name__}"
        )
    if not isinstance(key.curve, ec.SECP256R1):
        raise InvalidPrivateKeyError(
            f"{label}: expected curve P-256 (secp256r1), got {key.curve.name}"
        )
    return key


def load_private_key(path: str | os.PathLike[str]) -> ec.EllipticCurvePrivateKey:
    """Read and validate the private key at *path*.

    Raises:
        InvalidPrivateKeyError: If the file is missing, unreadable, or does
            not contain a P-256 PEM key.
    """
    key_path = Path(path).expanduser()
    try:
        data = key_path.read_bytes()
    except FileNotFoundError:
        raise InvalidPrivateKeyError(f"{key_path}: private key file not found") from None
    except IsADirectoryError:
        raise InvalidPrivateKeyError(f"{key_path}: path is a directory") from None
    except OSError as exc:
        raise InvalidPrivateKeyError(f"{key_path}: cannot read private key ({exc})") from exc
    return parse_private_key(data, str(key_path))


def decode_inline_key(value: str) -> bytes:
    """Normalise an inline PEM from an environment variable.

    CI systems frequently store multi-line secrets with literal ``\\n``
    sequences; those are turned back into newlines.
    """
    text = value.strip()
    if "\\n" in text and "\n" not in text:
        text = text.replace("\\n", "\n")
    return (text + "\n").encode("utf-8")


def decode_base64_key(value: str) -> bytes:
    """Decode a base64-encoded PEM.

    Raises:
        InvalidPrivateKeyError: If *value* is not valid base64.
    """
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidPrivateKeyError(f"ASC_PRIVATE_KEY_B64 is not valid base64 ({exc})") from exc


def stage_private_key(data: bytes) -> Path:
    """Validate *data* and write it to a ``0600`` ``asc-key-*.p8`` temp file.

    The file is registered for removal at interpreter exit.

    Raises:
        InvalidPrivateKeyError: If *data* is not a P-256 PEM key. Nothing is
            written in that case.
    """
    parse_private_key(data, "staged private key")
    # mkstemp creates the file with 0600.
    fd, name = tempfile.mkstemp(prefix=TEMP_KEY_PREFIX, suffix=TEMP_KEY_SUFFIX)
    try:
        os.write(fd, data)
    except BaseException:
        os.close(fd)
        os.unlink(name)
        raise
    os.close(fd)
    with _staged_lock:
        _staged.add(name)
    logger.debug("Staged private key at %s", name)
    return Path(name)


def is_staged(path: str | os.PathLike[str]) -> bool:
    """Whether *path* was staged by this process and is still in use."""
    with _staged_lock:
        return os.fspath(path) in _staged


def cleanup_staged_keys() -> None:
    """Remove every temp key file staged by this process."""
    with _staged_lock:
        paths = list(_staged)
        _staged.clear()
    for name in paths:
        try:
            os.unlink(name)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove staged private key %s: %s", name, exc)


atexit.register(cleanup_staged_keys)
