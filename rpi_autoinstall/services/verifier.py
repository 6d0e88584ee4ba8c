"""Signature and digest verification of a source image.

Trust is established in two gates, strictly in this order:

1. The ``SHA256SUMS`` manifest's detached signature must verify against the
   Ubuntu signing key. This authenticates the manifest, not the image.
2. The SHA-256 digest of the raw downloaded image bytes must be listed as an
   entry of that authenticated manifest.

Digest entries are never read before the signature gate has passed.
"""

from __future__ import annotations

import hashlib
from dataclasses import replace
from pathlib import Path

from rpi_autoinstall.domain import ImageSource, VerificationRecord
from rpi_autoinstall.exceptions import DigestMismatchError, SignatureError
from rpi_autoinstall.logging import LoggerFactory
from rpi_autoinstall.services.downloader import Fetcher
from rpi_autoinstall.services.gpg import SignatureChecker


log = LoggerFactory.for_verify()

HASH_CHUNK_SIZE = 4 * 1024 * 1024


def compute_sha256(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Hex SHA-256 of the full file content."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def manifest_digests(manifest_text: str) -> set[str]:
    """Digest column of a ``sha256sum``-format manifest.

    Lines look like ``<hex> *<file>`` or ``<hex>  <file>``; blank lines and
    lines without a 64-character hex digest are ignored.
    """
    digests = set()
    for line in manifest_text.splitlines():
        fields = line.strip().split()
        if not fields:
            continue
        candidate = fields[0].lower()
        if len(candidate) == 64 and all(c in "0123456789abcdef" for c in candidate):
            digests.add(candidate)
    return digests


class Verifier:
    """Checks an image against a signed checksum manifest."""

    def __init__(self, fetcher: Fetcher, signatures: SignatureChecker, work_dir: Path):
        self.fetcher = fetcher
        self.signatures = signatures
        self.work_dir = Path(work_dir)

    def prepare(self, source: ImageSource) -> VerificationRecord:
        """Make sure manifest and signature are cached locally and build the record."""
        record = VerificationRecord(
            manifest_path=self.work_dir / source.sha_manifest_name,
            signature_path=self.work_dir / source.sha_signature_name,
            keyring_path=self.work_dir / f"{source.signing_key_id}.keyring",
            signing_key_id=source.signing_key_id,
        )
        self.fetcher.fetch(source.manifest_url, record.manifest_path)
        self.fetcher.fetch(source.signature_url, record.signature_path)
        if source.user_supplied:
            log.warning(
                "⚠️ Automatic GPG verification is enabled. If the source image file "
                "is not the latest daily or release image, verification will fail!"
            )
        return record

    def verify(self, image_path: Path, record: VerificationRecord) -> VerificationRecord:
        """Run both trust gates; returns the record with ``image_digest`` set.

        Raises:
            SignatureError: The manifest signature is not valid for the key
            DigestMismatchError: The image digest is not in the manifest
        """
        log.info(f"🔐 Verifying {image_path} integrity and authenticity...")
        self.signatures.ensure_key(record.keyring_path, record.signing_key_id)
        self.check_signature(record)
        digest = compute_sha256(Path(image_path))
        self.check_digest(Path(image_path), digest, record)
        log.info("👍 Verification succeeded.")
        return replace(record, image_digest=digest)

    def check_signature(self, record: VerificationRecord) -> None:
        status = self.signatures.verify_detached(
            record.keyring_path, record.signature_path, record.manifest_path
        )
        if not status.valid:
            log.error(f"👿 Verification of {record.manifest_path.name} signature failed.")
            raise SignatureError(record.manifest_path, record.signing_key_id, status.reason)
        if not status.signed_by(record.signing_key_id):
            log.error(f"👿 {record.manifest_path.name} is signed by an unexpected key.")
            raise SignatureError(
                record.manifest_path,
                record.signing_key_id,
                f"signed by {status.fingerprint}",
            )
        log.debug(f"Manifest signature valid (key {status.fingerprint})")

    def check_digest(
        self, image_path: Path, digest: str, record: VerificationRecord
    ) -> None:
        manifest_text = _read_manifest(record.manifest_path)
        if digest.lower() not in manifest_digests(manifest_text):
            log.error("👿 Verification of image digest failed.")
            raise DigestMismatchError(image_path, digest, record.manifest_path)


def _read_manifest(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")

