"""Credential resolution, token signing, and credential health checks.

The main entry points are:

- :class:`CredentialStore` -- resolves which API key signs a request, from
  an explicit profile, ``ASC_*`` environment variables, the config file,
  or the system keychain.
- :class:`TokenSigner` -- turns a resolved credential into a cached ES256
  bearer token.
- :func:`doctor` -- audits stored credentials and, optionally, fixes
  permission problems and orphaned temp keys.

Typical usage::

    from ascli.auth import CredentialStore, TokenSigner

    credential = CredentialStore().resolve(profile="work")
    header = TokenSigner().authorization_header(credential)
"""

from ascli.auth.credential_store import CredentialListing, CredentialStore
from ascli.auth.doctor import apply_fixes, doctor
from ascli.auth.keychain import Keychain
from ascli.auth.signer import TokenSigner

__all__ = [
    "CredentialListing",
    "CredentialStore",
    "Keychain",
    "TokenSigner",
    "apply_fixes",
    "doctor",
]
