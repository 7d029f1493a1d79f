"""ascli -- transport and trust core for an App Store Connect API client.

This package holds everything that sits underneath individual API resources:
resolving which credentials to use, signing short-lived ES256 bearer tokens,
dispatching and retrying HTTP requests, guarding server-supplied follow URLs,
and auditing stored credentials with ``ascli auth doctor``.

Typical SDK usage::

    from ascli.auth import CredentialStore, TokenSigner
    from ascli.client import RequestDispatcher

    credential = CredentialStore().resolve()
    with RequestDispatcher(credential, signer=TokenSigner()) as dispatcher:
        apps = dispatcher.dispatch_json("GET", "/v1/apps")

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the package.
    config: Config file location, loading, and request settings.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.4.0"
