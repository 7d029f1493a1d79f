"""Health audit of everything credential resolution reads from disk.

``ascli auth doctor`` calls :func:`doctor`, which inspects five independent
sections, in order:

* **Storage** -- keychain availability, config file existence and mode.
* **Profiles** -- stored profiles, incomplete entries, duplicate names.
* **Private Keys** -- existence, mode, and structural validity of each key.
* **Environment** -- which ``ASC_*`` variables are set and whether they are
  partial or conflict with the stored default.
* **Temp Files** -- ``asc-key-*.p8`` files left behind by earlier runs.

Inspection never changes anything. Findings that can be corrected safely
(permission bits, orphaned temp keys) carry a :class:`~ascli.models.DoctorFix`
that :func:`apply_fixes` executes in a separate pass; structural problems
such as an invalid key or a missing file are only reported.

The doctor never raises: a section whose inspection fails is reported as a
single ``fail`` check and the other sections still run.
"""

from __future__ import annotations

import os
import stat
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional

from ascli.auth.credential_store import (
    ENV_CREDENTIAL_NAME,
    ENV_ISSUER_ID,
    ENV_KEY_ID,
    ENV_PRIVATE_KEY,
    ENV_PRIVATE_KEY_B64,
    ENV_PRIVATE_KEY_PATH,
    ENV_PROFILE,
    ENV_STRICT_AUTH,
    CredentialStore,
    EnvironmentCredentials,
)
from ascli.auth.keychain import ENV_BYPASS_KEYCHAIN
from ascli.auth.private_key import TEMP_KEY_PREFIX, TEMP_KEY_SUFFIX, is_staged, load_private_key
from ascli.config import CONFIG_FILE_MODE, ENV_CONFIG_PATH, ENV_TIMEOUT
from ascli.exceptions import AscliError, ConfigError, KeychainUnavailableError
from ascli.models import (
    DoctorCheck,
    DoctorFix,
    DoctorOptions,
    DoctorReport,
    DoctorSection,
    DoctorStatus,
    DoctorSummary,
)

SECTION_STORAGE = "Storage"
SECTION_PROFILES = "Profiles"
SECTION_PRIVATE_KEYS = "Private Keys"
SECTION_ENVIRONMENT = "Environment"
SECTION_TEMP_FILES = "Temp Files"

_REPORTED_ENV_VARS = (
    ENV_KEY_ID,
    ENV_ISSUER_ID,
    ENV_PRIVATE_KEY_PATH,
    ENV_PRIVATE_KEY,
    ENV_PRIVATE_KEY_B64,
    ENV_PROFILE,
    ENV_BYPASS_KEYCHAIN,
    ENV_STRICT_AUTH,
    ENV_CONFIG_PATH,
    ENV_TIMEOUT,
)
# Values of these are identifiers, not secrets, and are shown.
_SHOWN_ENV_VALUES = {ENV_KEY_ID, ENV_ISSUER_ID, ENV_PROFILE}

_BYPASS_RECOMMENDATION = (
    f"Consider using --bypass-keychain or setting {ENV_BYPASS_KEYCHAIN}=1"
)
_CONFLICT_RECOMMENDATION = "Use --profile or clear conflicting env vars"

_fix_lock = threading.Lock()


def doctor(
    options: Optional[DoctorOptions] = None,
    store: Optional[CredentialStore] = None,
) -> DoctorReport:
    """Audit credential storage and return the findings.

    Args:
        options: ``fix=True`` runs :func:`apply_fixes` after inspection.
        store: Credential store to inspect; defaults to a new
            :class:`~ascli.auth.credential_store.CredentialStore`.

    Returns:
        The report. Never raises.
    """
    options = options or DoctorOptions()
    store = store or CredentialStore()

    inspectors: list[tuple[str, Callable[[CredentialStore], DoctorSection]]] = [
        (SECTION_STORAGE, _inspect_storage),
        (SECTION_PROFILES, _inspect_profiles),
        (SECTION_PRIVATE_KEYS, _inspect_private_keys),
        (SECTION_ENVIRONMENT, _inspect_environment),
        (SECTION_TEMP_FILES, lambda _store: _inspect_temp_files()),
    ]
    sections: list[DoctorSection] = []
    for title, inspect in inspectors:
        try:
            sections.append(inspect(store))
        except Exception as exc:  # a broken section must not hide the others
            sections.append(
                DoctorSection(
                    title=title,
                    checks=[DoctorCheck(status=DoctorStatus.FAIL, message=f"Check failed: {exc}")],
                )
            )

    report = summarize(DoctorReport(sections=sections))
    if options.fix:
        report = apply_fixes(report)
    return report


def apply_fixes(report: DoctorReport) -> DoctorReport:
    """Execute the fix attached to every non-``ok`` check.

    A fixed check is re-labelled ``ok`` with ``fix_applied=True``; a fix that
    fails leaves its check untouched. Fix passes are serialised.

    Returns:
        A new report with recomputed summary and recommendations.
    """
    fixed = report.model_copy(deep=True)
    with _fix_lock:
        for section in fixed.sections:
            for check in section.checks:
                if check.fix is None or check.status == DoctorStatus.OK:
                    continue
                if not _run_fix(check.fix):
                    continue
                check.status = DoctorStatus.OK
                check.message = check.fix.fixed_message
                check.recommendation = None
                check.fix_applied = True
                check.fix = None
    return summarize(fixed)


def summarize(report: DoctorReport) -> DoctorReport:
    """Recompute per-status counts and the sorted, de-duplicated recommendations."""
    summary = DoctorSummary()
    recommendations: set[str] = set()
    for section in report.sections:
        for check in section.checks:
            if check.status == DoctorStatus.OK:
                summary.ok += 1
            elif check.status == DoctorStatus.INFO:
                summary.info += 1
            elif check.status == DoctorStatus.WARN:
                summary.warnings += 1
            else:
                summary.errors += 1
            if check.recommendation and check.status != DoctorStatus.OK:
                recommendations.add(check.recommendation)
    report.summary = summary
    report.recommendations = sorted(recommendations)
    return report


# ------------------------------------------------------------------ #
# Sections
# ------------------------------------------------------------------ #


def _inspect_storage(store: CredentialStore) -> DoctorSection:
    checks: list[DoctorCheck] = []
    keychain_available = False

    if not store.keychain_enabled:
        checks.append(
            DoctorCheck(
                status=DoctorStatus.INFO,
                message=f"Keychain is bypassed via {ENV_BYPASS_KEYCHAIN}=1",
            )
        )
    else:
        try:
            store.keychain.open()
        except KeychainUnavailableError as exc:
            checks.append(
                DoctorCheck(
                    status=DoctorStatus.WARN,
                    message=f"System keychain is unavailable ({exc})",
                    recommendation=_BYPASS_RECOMMENDATION,
                )
            )
        else:
            keychain_available = True
            checks.append(
                DoctorCheck(status=DoctorStatus.OK, message="System keychain is available")
            )

    try:
        path = store.config_path
    except ConfigError as exc:
        checks.append(
            DoctorCheck(status=DoctorStatus.FAIL, message=f"Failed to resolve config path: {exc}")
        )
        return DoctorSection(title=SECTION_STORAGE, checks=checks)

    try:
        info = path.stat()
    except FileNotFoundError:
        checks.append(
            DoctorCheck(status=DoctorStatus.INFO, message=f"Config file not found at {path}")
        )
        return DoctorSection(title=SECTION_STORAGE, checks=checks)
    except OSError as exc:
        checks.append(
            DoctorCheck(status=DoctorStatus.FAIL, message=f"Failed to stat config file: {exc}")
        )
        return DoctorSection(title=SECTION_STORAGE, checks=checks)

    checks.append(DoctorCheck(status=DoctorStatus.OK, message=f"Config file exists at {path}"))
    mode = stat.S_IMODE(info.st_mode)
    if mode & 0o077:
        checks.append(
            DoctorCheck(
                status=DoctorStatus.WARN,
                message=f"Config file permissions are too permissive ({mode:#o})",
                recommendation=f'Run: chmod 600 "{path}"',
                fix=DoctorFix(
                    action="chmod",
                    paths=[str(path)],
                    mode=CONFIG_FILE_MODE,
                    fixed_message=f"Config file permissions fixed to 0600 ({path})",
                ),
            )
        )

    if keychain_available:
        try:
            has_keys = bool(store.load_config().keys)
        except ConfigError:
            has_keys = False
        if has_keys:
            checks.append(
                DoctorCheck(
                    status=DoctorStatus.WARN,
                    message="Config file contains credentials while keychain is available",
                    recommendation=(
                        "Prefer storing credentials in keychain "
                        "(re-run auth login without --bypass-keychain)"
                    ),
                )
            )
    return DoctorSection(title=SECTION_STORAGE, checks=checks)


def _inspect_profiles(store: CredentialStore) -> DoctorSection:
    checks: list[DoctorCheck] = []
    try:
        listing = store.list_credentials()
    except AscliError as exc:
        return DoctorSection(
            title=SECTION_PROFILES,
            checks=[
                DoctorCheck(
                    status=DoctorStatus.FAIL,
                    message=f"Failed to list stored credentials: {exc}",
                )
            ],
        )

    if listing.warning is not None:
        checks.append(DoctorCheck(status=DoctorStatus.WARN, message=str(listing.warning)))

    if not listing.credentials:
        checks.append(DoctorCheck(status=DoctorStatus.INFO, message="No stored credentials found"))

    for credential in listing.credentials:
        if not credential.is_complete:
            checks.append(
                DoctorCheck(
                    status=DoctorStatus.WARN,
                    message=(
                        f"{credential.name} - incomplete "
                        "(missing key ID, issuer ID, or private key path)"
                    ),
                    recommendation=f'Re-run auth login for "{credential.name}"',
                )
            )
            continue
        source = credential.source.value
        if credential.source_path:
            source = f"{source}: {credential.source_path}"
        message = f"{credential.name} - complete ({source})"
        if credential.is_default:
            message += " [default]"
        checks.append(DoctorCheck(status=DoctorStatus.OK, message=message))

    cfg = store.load_config()
    counts: dict[str, int] = {}
    for stored in cfg.keys:
        name = stored.name.strip()
        if name:
            counts[name] = counts.get(name, 0) + 1
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        checks.append(
            DoctorCheck(
                status=DoctorStatus.WARN,
                message=f"Duplicate profiles in config: {', '.join(duplicates)}",
                recommendation=f"Clean up duplicates in {store.config_path}",
            )
        )
    return DoctorSection(title=SECTION_PROFILES, checks=checks)


def _inspect_private_keys(store: CredentialStore) -> DoctorSection:
    try:
        listing = store.list_credentials()
    except AscliError as exc:
        return DoctorSection(
            title=SECTION_PRIVATE_KEYS,
            checks=[
                DoctorCheck(
                    status=DoctorStatus.FAIL,
                    message=f"Failed to list stored credentials: {exc}",
                )
            ],
        )

    if not listing.credentials:
        return DoctorSection(
            title=SECTION_PRIVATE_KEYS,
            checks=[DoctorCheck(status=DoctorStatus.INFO, message="No private keys to validate")],
        )

    checks: list[DoctorCheck] = []
    seen: set[str] = set()
    for credential in listing.credentials:
        path = credential.private_key_path.strip()
        if not path:
            checks.append(
                DoctorCheck(
                    status=DoctorStatus.FAIL,
                    message=f"{credential.name} - missing private key path",
                )
            )
            continue
        if path in seen:
            continue
        seen.add(path)
        checks.append(_inspect_key_file(Path(path).expanduser()))
    return DoctorSection(title=SECTION_PRIVATE_KEYS, checks=checks)


def _inspect_key_file(path: Path) -> DoctorCheck:
    try:
        info = path.stat()
    except FileNotFoundError:
        return DoctorCheck(status=DoctorStatus.FAIL, message=f"{path} - file not found")
    except OSError as exc:
        return DoctorCheck(status=DoctorStatus.FAIL, message=f"{path} - failed to stat file: {exc}")
    if stat.S_ISDIR(info.st_mode):
        return DoctorCheck(status=DoctorStatus.FAIL, message=f"{path} - path is a directory")

    try:
        load_private_key(path)
    except AscliError as exc:
        return DoctorCheck(status=DoctorStatus.FAIL, message=f"{path} - invalid private key: {exc}")

    mode = stat.S_IMODE(info.st_mode)
    if mode & 0o077:
        return DoctorCheck(
            status=DoctorStatus.WARN,
            message=f"{path} - permissions {mode:#o} (expected 0o600)",
            recommendation=f'Run: chmod 600 "{path}"',
            fix=DoctorFix(
                action="chmod",
                paths=[str(path)],
                mode=0o600,
                fixed_message=f"{path} - valid ECDSA key, permissions fixed to 0600",
            ),
        )
    return DoctorCheck(
        status=DoctorStatus.OK,
        message=f"{path} - valid ECDSA key, permissions {mode:#o}",
    )


def _inspect_environment(store: CredentialStore) -> DoctorSection:
    checks: list[DoctorCheck] = []
    for name in _REPORTED_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if not value:
            continue
        message = f"{name} is set ({value})" if name in _SHOWN_ENV_VALUES else f"{name} is set"
        checks.append(DoctorCheck(status=DoctorStatus.INFO, message=message))

    env = EnvironmentCredentials.from_environ()
    if env.provided and not env.complete:
        checks.append(
            DoctorCheck(
                status=DoctorStatus.WARN,
                message=(
                    f"Environment credentials are incomplete (set {ENV_KEY_ID}, "
                    f"{ENV_ISSUER_ID}, and a private key)"
                ),
                recommendation="Set missing ASC_* variables or clear partial values",
            )
        )

    if env.provided:
        try:
            default = store.get_default_credentials()
        except AscliError:
            default = None
        if default is not None and default.name != ENV_CREDENTIAL_NAME:
            if env.key_id and default.key_id and env.key_id != default.key_id:
                checks.append(
                    DoctorCheck(
                        status=DoctorStatus.WARN,
                        message=f"{ENV_KEY_ID} differs from default stored credentials",
                        recommendation=_CONFLICT_RECOMMENDATION,
                    )
                )
            if env.issuer_id and default.issuer_id and env.issuer_id != default.issuer_id:
                checks.append(
                    DoctorCheck(
                        status=DoctorStatus.WARN,
                        message=f"{ENV_ISSUER_ID} differs from default stored credentials",
                        recommendation=_CONFLICT_RECOMMENDATION,
                    )
                )
    return DoctorSection(title=SECTION_ENVIRONMENT, checks=checks)


def _inspect_temp_files() -> DoctorSection:
    temp_dir = Path(tempfile.gettempdir())
    try:
        candidates = sorted(temp_dir.glob(f"{TEMP_KEY_PREFIX}*{TEMP_KEY_SUFFIX}"))
    except OSError as exc:
        return DoctorSection(
            title=SECTION_TEMP_FILES,
            checks=[
                DoctorCheck(
                    status=DoctorStatus.WARN,
                    message=f"Failed to read temp directory: {exc}",
                )
            ],
        )

    orphans = [str(p) for p in candidates if p.is_file() and not is_staged(p)]
    if not orphans:
        return DoctorSection(
            title=SECTION_TEMP_FILES,
            checks=[DoctorCheck(status=DoctorStatus.OK, message="No orphaned temp key files found")],
        )
    return DoctorSection(
        title=SECTION_TEMP_FILES,
        checks=[
            DoctorCheck(
                status=DoctorStatus.WARN,
                message=f"Found {len(orphans)} orphaned temp key file(s)",
                recommendation="Remove orphaned temp key files from your temp directory",
                fix=DoctorFix(
                    action="remove",
                    paths=orphans,
                    fixed_message=f"Removed {len(orphans)} orphaned temp key file(s)",
                ),
            )
        ],
    )


# ------------------------------------------------------------------ #
# Fix execution
# ------------------------------------------------------------------ #


def _run_fix(fix: DoctorFix) -> bool:
    try:
        for path in fix.paths:
            if fix.action == "chmod":
                os.chmod(path, fix.mode)
            else:
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass
    except OSError:
        return False
    return True

