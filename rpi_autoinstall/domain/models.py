"""Domain model for an image build run.

Stages hand these immutable records to each other instead of sharing
module-level state: the CLI builds a ``PipelineConfig``, the resolver turns it
into an ``ImageSource``, verification works on a ``VerificationRecord`` and the
loop mounter returns a ``MountHandle``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Optional

from rpi_autoinstall.config.settings import DEFAULT_BLOCK_BACKEND, MirrorConfig
from rpi_autoinstall.exceptions import ConfigError


USER_DATA_NAME = "user-data"
META_DATA_NAME = "meta-data"
PROVISIONING_FILE_NAMES = (USER_DATA_NAME, META_DATA_NAME)

REMOTE_MANIFEST_NAME = "SHA256SUMS"
REMOTE_SIGNATURE_NAME = "SHA256SUMS.gpg"


# ==============================================================================
# Configuration
# ==============================================================================


class ReleaseChannel(Enum):
    """Which Ubuntu build to target."""

    DAILY = "daily"
    RELEASE = "release"


@dataclass(frozen=True)
class ProvisioningFiles:
    """Operator-supplied cloud-init files."""

    user_data: Path
    meta_data: Optional[Path] = None


@dataclass(frozen=True)
class PipelineConfig:
    """Resolved configuration for one run.

    Built once by the CLI layer; nothing in the pipeline mutates it.
    """

    user_data_file: Path
    work_dir: Path
    meta_data_file: Optional[Path] = None
    verify: bool = True
    channel: ReleaseChannel = ReleaseChannel.DAILY
    source_image: Optional[Path] = None
    destination_image: Optional[Path] = None
    offline: bool = False
    block_backend: str = DEFAULT_BLOCK_BACKEND
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    today: date = field(default_factory=date.today)

    @property
    def provisioning_files(self) -> ProvisioningFiles:
        return ProvisioningFiles(
            user_data=self.user_data_file, meta_data=self.meta_data_file
        )

    @property
    def destination_path(self) -> Path:
        """Where the patched image is written."""
        if self.destination_image is not None:
            return self.destination_image
        return self.work_dir / f"ubuntu-autoinstall-{self.today.isoformat()}.img"

    def validate(self) -> None:
        """Check input files before any work starts.

        Raises:
            ConfigError: If a provisioning file or the source image is missing
                or unreadable
        """
        _require_readable(self.user_data_file, "user-data file")
        if self.meta_data_file is not None:
            _require_readable(self.meta_data_file, "meta-data file")
        if self.source_image is not None and not self.source_image.is_file():
            raise ConfigError(f"Source image file could not be found: {self.source_image}")
        if self.destination_image is not None and self.source_image is not None:
            if self.destination_image.resolve() == self.source_image.resolve():
                raise ConfigError("Destination image must differ from the source image")


def _require_readable(path: Path, label: str) -> None:
    if not path.is_file():
        raise ConfigError(f"{label} could not be found: {path}")
    if not os.access(path, os.R_OK):
        raise ConfigError(f"{label} is not readable: {path}")


# ==============================================================================
# Stage records
# ==============================================================================


@dataclass(frozen=True)
class ImageSource:
    """The remote artifact a run targets and where it lives locally."""

    url: str  # Index/download directory URL
    filename: str  # Remote image file name
    sha_manifest_name: str  # Local cache name, e.g. SHA256SUMS-2024-05-01
    sha_signature_name: str  # Local cache name, e.g. SHA256SUMS-2024-05-01.gpg
    signing_key_id: str
    local_path: Path
    version: Optional[str] = None  # Point release, e.g. "22.04.4"
    user_supplied: bool = False  # Operator passed --source

    @property
    def image_url(self) -> str:
        return _join_url(self.url, self.filename)

    @property
    def manifest_url(self) -> str:
        return _join_url(self.url, REMOTE_MANIFEST_NAME)

    @property
    def signature_url(self) -> str:
        return _join_url(self.url, REMOTE_SIGNATURE_NAME)


def _join_url(base: str, name: str) -> str:
    return f"{base.rstrip('/')}/{name}"


@dataclass(frozen=True)
class VerificationRecord:
    """Files involved in checking one image.

    ``image_digest`` is filled in by the verifier once the digest is computed.
    """

    manifest_path: Path
    signature_path: Path
    keyring_path: Path
    signing_key_id: str
    image_digest: Optional[str] = None


@dataclass(frozen=True)
class MountHandle:
    """A mounted first partition of a loop-attached image."""

    loop_device_path: str  # e.g. /dev/loop7
    partition_device_path: str  # e.g. /dev/loop7p1
    mount_point: Path
    image_path: Path

    def provisioning_path(self, name: str) -> Path:
        return self.mount_point / name

    def missing_provisioning_files(self) -> list[str]:
        """Names from PROVISIONING_FILE_NAMES absent from the mount."""
        return [
            name
            for name in PROVISIONING_FILE_NAMES
            if not self.provisioning_path(name).is_file()
        ]


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a successful run."""

    source: ImageSource
    destination: Path
    verified: bool
    image_digest: Optional[str] = None
