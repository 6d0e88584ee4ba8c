"""GnuPG access for the verifier.

gpg runs with ``--no-default-keyring`` against a keyring file in the work
directory and a throwaway ``--homedir`` so the operator's own keyrings are
never read or written. Signature results are read from gpg's machine-readable
status protocol (``--status-fd``) rather than from its human-readable output.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from rpi_autoinstall.exceptions import CommandError, DownloadError
from rpi_autoinstall.logging import LoggerFactory
from rpi_autoinstall.storage.command_runners import run_command


log = LoggerFactory.for_verify()

STATUS_PREFIX = "[GNUPG:] "


@dataclass(frozen=True)
class SignatureStatus:
    """Parsed outcome of ``gpg --verify``."""

    valid: bool
    fingerprint: Optional[str] = None
    primary_fingerprint: Optional[str] = None
    reason: str = ""

    def signed_by(self, key_id: str) -> bool:
        """Whether the signature was made by ``key_id`` (fingerprint or long id)."""
        wanted = key_id.replace(" ", "").upper()
        for fpr in (self.fingerprint, self.primary_fingerprint):
            if fpr and fpr.upper().endswith(wanted):
                return True
        return False


class SignatureChecker(Protocol):
    """What the verifier needs from an OpenPGP implementation."""

    def ensure_key(self, keyring: Path, key_id: str) -> bool:
        ...

    def verify_detached(self, keyring: Path, signature: Path, data: Path) -> SignatureStatus:
        ...


def parse_status(output: str) -> SignatureStatus:
    """Read VALIDSIG/BADSIG/ERRSIG/NO_PUBKEY lines from gpg status output."""
    fingerprint = None
    primary = None
    bad_reason = ""
    for line in output.splitlines():
        if not line.startswith(STATUS_PREFIX):
            continue
        fields = line[len(STATUS_PREFIX):].split()
        if not fields:
            continue
        keyword = fields[0]
        if keyword == "VALIDSIG" and len(fields) > 1:
            fingerprint = fields[1]
            primary = fields[-1] if len(fields) > 10 else None
        elif keyword == "BADSIG":
            bad_reason = "bad signature"
        elif keyword == "ERRSIG":
            bad_reason = bad_reason or "signature could not be checked"
        elif keyword == "NO_PUBKEY":
            bad_reason = "signing key not in keyring"
        elif keyword == "EXPKEYSIG":
            bad_reason = "signing key expired"
        elif keyword == "REVKEYSIG":
            bad_reason = "signing key revoked"
    if fingerprint and not bad_reason:
        return SignatureStatus(valid=True, fingerprint=fingerprint, primary_fingerprint=primary)
    return SignatureStatus(valid=False, reason=bad_reason or "no valid signature found")


class GpgKeyring:
    """``SignatureChecker`` backed by the gpg command line tool."""

    def __init__(self, home_dir: Path, keyserver: str, gpg: str = "gpg"):
        self.home_dir = Path(home_dir)
        self.keyserver = keyserver
        self.gpg = gpg

    def _base_command(self, keyring: Path) -> list[str]:
        self.home_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        return [
            self.gpg,
            "--batch",
            "--quiet",
            "--homedir",
            str(self.home_dir),
            "--no-default-keyring",
            "--keyring",
            str(Path(keyring).resolve()),
        ]

    def ensure_key(self, keyring: Path, key_id: str) -> bool:
        """Import ``key_id`` from the keyserver unless ``keyring`` already exists.

        The key is received into a temporary keyring that replaces the target
        only on success, so a failed import never leaves a keyring that later
        runs would treat as cached.

        Returns:
            True if the key was downloaded, False if the cached keyring was used

        Raises:
            DownloadError: If the keyserver lookup fails
        """
        keyring = Path(keyring)
        if keyring.exists():
            log.info(f"☑️ Using existing signing key saved in {keyring}")
            return False
        log.info("🌎 Downloading and saving signing key...")
        staging = keyring.with_name(keyring.name + ".part")
        try:
            run_command(
                [
                    *self._base_command(staging),
                    "--keyserver",
                    self.keyserver,
                    "--recv-keys",
                    key_id,
                ]
            )
            os.replace(staging, keyring)
        except CommandError as error:
            raise DownloadError(
                self.keyserver, f"cannot import key {key_id}: {error.output or error}"
            ) from error
        except OSError as error:
            raise DownloadError(self.keyserver, f"cannot save keyring {keyring}: {error}") from error
        finally:
            _remove_backups(staging)
            if staging.exists():
                staging.unlink()
        log.info(f"👍 Downloaded and saved to {keyring}")
        return True

    def verify_detached(self, keyring: Path, signature: Path, data: Path) -> SignatureStatus:
        """Check ``signature`` over ``data`` against ``keyring``."""
        try:
            result = run_command(
                [
                    *self._base_command(keyring),
                    "--status-fd",
                    "1",
                    "--verify",
                    str(signature),
                    str(data),
                ],
                check=False,
            )
        finally:
            _remove_backups(keyring)
        status = parse_status(result.stdout or "")
        if result.returncode != 0 and status.valid:
            return SignatureStatus(valid=False, reason=f"gpg exited with {result.returncode}")
        return status


def _remove_backups(keyring: Path) -> None:
    """Delete the ``<keyring>~`` backup gpg leaves next to keyrings it touched."""
    backup = Path(f"{keyring}~")
    if backup.exists():
        backup.unlink()
