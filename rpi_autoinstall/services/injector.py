"""Replace cloud-init provisioning files inside a mounted image.

Not transactional: if a copy fails after the original was removed, the
partition is left without that file. The pipeline treats the destination image
as incomplete in that case and discards it.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from rpi_autoinstall.domain import (
    META_DATA_NAME,
    USER_DATA_NAME,
    MountHandle,
    ProvisioningFiles,
)
from rpi_autoinstall.exceptions import InjectionError
from rpi_autoinstall.logging import LoggerFactory


log = LoggerFactory.for_inject()


class Injector:
    def inject(self, handle: MountHandle, files: ProvisioningFiles) -> None:
        """Overwrite user-data, and meta-data when supplied, in the mounted partition.

        Without a meta-data override the image's own meta-data is kept.

        Raises:
            InjectionError: A source file is unreadable or the target write fails
        """
        log.info("🧩 Adding user-data and meta-data files...")
        replace_file(files.user_data, handle.provisioning_path(USER_DATA_NAME))
        if files.meta_data is not None:
            replace_file(files.meta_data, handle.provisioning_path(META_DATA_NAME))
        else:
            log.debug("No meta-data override supplied; keeping the image's meta-data")
        _sync()
        log.info("👍 Added cloud-config data.")


def replace_file(source: Path, target: Path) -> None:
    """Remove ``target`` and copy ``source`` into its place."""
    if not os.access(source, os.R_OK):
        raise InjectionError(f"Cannot read {source}", target=target)
    try:
        if target.exists():
            target.unlink()
        shutil.copyfile(source, target)
    except OSError as error:
        raise InjectionError(f"Cannot write {target}: {error}", target=target) from error
    log.debug(f"Replaced {target} with {source}")


def _sync() -> None:
    if hasattr(os, "sync"):
        os.sync()
