"""ES256 bearer tokens for the App Store Connect API.

:class:`TokenSigner` turns a resolved :class:`~ascli.models.Credential` into
a short-lived JWT (``kid`` = key id, ``iss`` = issuer id, audience
``appstoreconnect-v1``) and caches it per credential until it is within
:attr:`TokenSigner.safety_margin` of expiry. Tokens are never written to disk.

The signer is shared by concurrent requests: reading a fresh cached token
takes no lock, while the check-then-sign-then-store sequence runs under a
:class:`threading.Lock` so that only one caller signs a replacement.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

import jwt
from cryptography.hazmat.primitives.asymmetric import ec

from ascli.auth.private_key import load_private_key
from ascli.exceptions import IncompleteCredentialError, InvalidPrivateKeyError
from ascli.models import Credential, SignedToken, utcnow

AUDIENCE = "appstoreconnect-v1"
ALGORITHM = "ES256"

DEFAULT_LIFETIME = timedelta(minutes=10)
MAX_LIFETIME = timedelta(minutes=20)
DEFAULT_SAFETY_MARGIN = timedelta(minutes=2)


class TokenSigner:
    """Sign and cache bearer tokens.

    Args:
        lifetime: Token validity; at most :data:`MAX_LIFETIME`.
        safety_margin: A cached token is replaced once it is this close to
            expiry.
        clock: Returns the current aware UTC time; injectable for tests.

    Raises:
        ValueError: If *lifetime* is not positive or exceeds
            :data:`MAX_LIFETIME`, or *safety_margin* is not shorter than it.
    """

    def __init__(
        self,
        lifetime: timedelta = DEFAULT_LIFETIME,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if lifetime <= timedelta(0) or lifetime > MAX_LIFETIME:
            raise ValueError(
                f"Token lifetime must be between 0 and {MAX_LIFETIME}, got {lifetime}"
            )
        if safety_margin < timedelta(0) or safety_margin >= lifetime:
            raise ValueError("Safety margin must be non-negative and shorter than the lifetime")
        self.lifetime = lifetime
        self.safety_margin = safety_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: dict[str, SignedToken] = {}
        self._keys: dict[str, ec.EllipticCurvePrivateKey] = {}

    def sign(self, credential: Credential) -> SignedToken:
        """Return a fresh token for *credential*, signing a new one only when needed.

        Raises:
            IncompleteCredentialError: If *credential* lacks a key id,
                issuer id, or key path.
            InvalidPrivateKeyError: If the key file is missing or not a
                P-256 PEM key. No token is produced.
        """
        cache_key = self._cache_key(credential)
        cached = self._tokens.get(cache_key)
        if cached is not None and cached.is_fresh(self._clock(), self.safety_margin):
            return cached

        with self._lock:
            # Another thread may have signed while we waited.
            cached = self._tokens.get(cache_key)
            now = self._clock()
            if cached is not None and cached.is_fresh(now, self.safety_margin):
                return cached
            token = self._sign(credential, now)
            self._tokens[cache_key] = token
            return token

    def authorization_header(self, credential: Credential) -> str:
        """Return the ``Authorization`` header value for *credential*."""
        return f"Bearer {self.sign(credential).value}"

    def invalidate(self, credential: Optional[Credential] = None) -> None:
        """Drop the cached token for *credential*, or every cached token."""
        with self._lock:
            if credential is None:
                self._tokens.clear()
                self._keys.clear()
            else:
                self._tokens.pop(self._cache_key(credential), None)
                self._keys.pop(credential.private_key_path, None)

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _cache_key(credential: Credential) -> str:
        return f"{credential.name}\x00{credential.key_id}\x00{credential.private_key_path}"

    def _load_key(self, path: str) -> ec.EllipticCurvePrivateKey:
        key = self._keys.get(path)
        if key is None:
            key = load_private_key(path)
            self._keys[path] = key
        return key

    def _sign(self, credential: Credential, now: datetime) -> SignedToken:
        if not credential.is_complete:
            raise IncompleteCredentialError(
                f"Cannot sign for profile {credential.name!r}: key ID, issuer ID, "
                "and private key path are all required"
            )
        key = self._load_key(credential.private_key_path)
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + self.lifetime
        payload = {
            "iss": credential.issuer_id,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "aud": AUDIENCE,
        }
        headers = {"kid": credential.key_id, "typ": "JWT"}
        try:
            value = jwt.encode(payload, key, algorithm=ALGORITHM, headers=headers)
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise InvalidPrivateKeyError(
                f"Failed to sign token for profile {credential.name!r}: {exc}"
            ) from exc
        return SignedToken(
            value=value,
            issued_at=issued_at,
            expires_at=expires_at,
            credential_name=credential.name,
        )
