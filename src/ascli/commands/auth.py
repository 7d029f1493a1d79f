"""Auth commands -- manage App Store Connect API key profiles.

Provides the ``ascli auth`` sub-command group:

* ``login`` -- validate a ``.p8`` key and store a named profile in the
  keychain (or the config file with ``--bypass-keychain``).
* ``logout`` -- remove a profile from every store.
* ``status`` -- list stored profiles and show which one resolves.
* ``doctor`` -- audit stored credentials, optionally fixing permissions.

Typical workflow::

    ascli auth login --name work --key-id ABC123 --issuer-id ... \\
        --private-key ~/Downloads/AuthKey_ABC123.p8
    ascli auth status
    ascli auth doctor --fix
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from ascli.auth.credential_store import CredentialStore
from ascli.auth.doctor import doctor
from ascli.auth.private_key import load_private_key
from ascli.commands import exit_on_error
from ascli.exceptions import CredentialError, InvalidUsageError
from ascli.exit_codes import EXIT_GENERIC_FAILURE
from ascli.models import CredentialSource, DoctorOptions, StoredCredential
from ascli.output import get_output, info, success, suggest, warning


auth_app = typer.Typer(no_args_is_help=True)


def _store() -> CredentialStore:
    return CredentialStore()


@auth_app.command("login")
def auth_login(
    name: str = typer.Option(..., "--name", help="Profile name."),
    key_id: str = typer.Option(..., "--key-id", help="API key ID."),
    issuer_id: str = typer.Option(..., "--issuer-id", help="Issuer ID."),
    private_key: Path = typer.Option(..., "--private-key", help="Path to the .p8 private key."),
    bypass_keychain: bool = typer.Option(
        False, "--bypass-keychain", help="Store the profile in the config file instead of the keychain."
    ),
    make_default: bool = typer.Option(
        False, "--default/--no-default", help="Make this the default profile."
    ),
) -> None:
    """Store an API key profile.

    The private key is validated (PEM, ECDSA P-256) before anything is
    written. Only the key's path is stored, never its contents.

    Example::

        ascli auth login --name work --key-id ABC123 --issuer-id 69a6de7e-... \\
            --private-key ~/AuthKey_ABC123.p8 --default
    """
    with exit_on_error():
        name = name.strip()
        if not name:
            raise InvalidUsageError("--name must not be empty")
        key_path = private_key.expanduser().resolve()
        load_private_key(key_path)

        stored = StoredCredential(
            name=name,
            key_id=key_id.strip(),
            issuer_id=issuer_id.strip(),
            private_key_path=str(key_path),
        )
        if not stored.is_complete:
            raise InvalidUsageError("--key-id and --issuer-id must not be empty")

        store = _store()
        source = store.save_credential(
            stored,
            use_keychain=not bypass_keychain,
            make_default=make_default,
        )
        location = "keychain" if source == CredentialSource.KEYCHAIN else str(store.config_path)
        success(f'Saved profile "{name}" to {location}.')
        suggest("Check it: ascli auth status")


@auth_app.command("logout")
def auth_logout(
    name: str = typer.Option(..., "--name", help="Profile name to remove."),
) -> None:
    """Remove a stored profile from the keychain and the config file."""
    with exit_on_error():
        if _store().delete_credential(name.strip()):
            success(f'Removed profile "{name}".')
        else:
            warning(f'No stored profile named "{name}".')


@auth_app.command("status")
def auth_status(ctx: typer.Context) -> None:
    """List stored profiles and show which credential resolves."""
    profile = (ctx.obj or {}).get("profile")
    with exit_on_error():
        store = _store()
        listing = store.list_credentials()
        if listing.warning is not None:
            warning(str(listing.warning))

        if listing.credentials:
            rows = [
                [
                    credential.name,
                    credential.key_id,
                    credential.issuer_id,
                    credential.source.value,
                    "yes" if credential.is_default else "",
                ]
                for credential in listing.credentials
            ]
            get_output().print_table(
                ["Name", "Key ID", "Issuer ID", "Source", "Default"],
                rows,
                title="Stored profiles",
            )
        else:
            info("No stored profiles.")

        try:
            active = store.resolve(profile)
        except CredentialError as exc:
            warning(f"No usable credential: {exc}")
            suggest("Run: ascli auth login")
        else:
            info(f'Active credential: "{active.name}" ({active.source.value})')


@auth_app.command("doctor")
def auth_doctor(
    fix: bool = typer.Option(False, "--fix", help="Fix permission problems and remove orphaned temp keys."),
) -> None:
    """Audit stored credentials.

    Exits with code 1 when any check fails.
    """
    report = doctor(DoctorOptions(fix=fix))
    get_output().print_doctor_report(report)
    if report.summary.errors:
        raise typer.Exit(code=EXIT_GENERIC_FAILURE)
