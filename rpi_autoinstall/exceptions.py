"""Custom exceptions for the image build pipeline.

Every failure that ends a run is one of these. Each class carries the process
exit code ``main()`` uses for it, so operators and wrapper scripts can tell
failure kinds apart without parsing messages.

Exception Hierarchy:
    AutoinstallError (base)
        ├── ConfigError
        ├── ResolutionError
        ├── DownloadError
        ├── VerificationError
        │   ├── SignatureError
        │   └── DigestMismatchError
        ├── MountError
        │   └── WrongImageError
        ├── InjectionError
        ├── CommandError
        └── PipelineInterrupted

Usage:
    from rpi_autoinstall.exceptions import DigestMismatchError

    if digest not in manifest_digests:
        raise DigestMismatchError(image_path, digest, manifest_path)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class AutoinstallError(Exception):
    """Base exception for all pipeline failures."""

    exit_code = 1
    kind = "error"


class ConfigError(AutoinstallError):
    """Inputs violate a precondition of the pipeline."""

    exit_code = 2
    kind = "configuration"


class ResolutionError(AutoinstallError):
    """Could not decide which remote image to use."""

    exit_code = 3
    kind = "resolution"

    def __init__(self, message: str, index_url: Optional[str] = None):
        self.index_url = index_url
        super().__init__(message)


class DownloadError(AutoinstallError):
    """Transfer of a remote resource failed."""

    exit_code = 4
    kind = "download"

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download {url}: {reason}")


class VerificationError(AutoinstallError):
    """Base exception for trust-chain failures."""

    exit_code = 5
    kind = "verification"


class SignatureError(VerificationError):
    """The checksum manifest is not signed by the trusted key."""

    kind = "signature"

    def __init__(self, manifest_path: Path, key_id: str, reason: str = ""):
        self.manifest_path = manifest_path
        self.key_id = key_id
        self.reason = reason
        msg = f"Verification of {Path(manifest_path).name} signature failed for key {key_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DigestMismatchError(VerificationError):
    """The image digest is not listed in the authenticated manifest."""

    exit_code = 6
    kind = "digest"

    def __init__(self, image_path: Path, digest: str, manifest_path: Path):
        self.image_path = image_path
        self.digest = digest
        self.manifest_path = manifest_path
        super().__init__(
            f"Verification of image digest failed: sha256 {digest} of "
            f"{Path(image_path).name} is not listed in {Path(manifest_path).name}"
        )


class MountError(AutoinstallError):
    """Loop device setup, partition lookup or mount failed."""

    exit_code = 7
    kind = "mount"


class WrongImageError(MountError):
    """First partition lacks the provisioning files."""

    exit_code = 8
    kind = "wrong-image"

    def __init__(self, partition: str, missing: Sequence[str]):
        self.partition = partition
        self.missing = list(missing)
        super().__init__(
            f"Image first partition {partition} has no {' or '.join(self.missing)}. "
            "Probably wrong partition or image."
        )


class InjectionError(AutoinstallError):
    """Replacing a provisioning file inside the image failed."""

    exit_code = 9
    kind = "injection"

    def __init__(self, message: str, target: Optional[Path] = None):
        self.target = target
        super().__init__(message)


class CommandError(AutoinstallError):
    """An external tool exited with a non-zero status."""

    exit_code = 10
    kind = "command"

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command failed ({' '.join(self.command)})"
        if output:
            message += f": {output}"
        super().__init__(message)


class PipelineInterrupted(AutoinstallError):
    """The run was stopped by SIGINT or SIGTERM."""

    exit_code = 130
    kind = "interrupted"

    def __init__(self, signum: int):
        self.signum = signum
        self.exit_code = 128 + signum
        super().__init__(f"Interrupted by signal {signum}")
