"""acquire -> verify -> mount -> patch -> release.

``run_pipeline`` drives the stages in a fixed order inside one
``CleanupGuard`` scope. Collaborators that touch the network, gpg or the
kernel are injectable so they can be replaced in tests.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from rpi_autoinstall.domain import PipelineConfig, PipelineResult
from rpi_autoinstall.logging import LoggerFactory, operation_context
from rpi_autoinstall.services.cleanup import CleanupGuard
from rpi_autoinstall.services.downloader import Downloader, Fetcher
from rpi_autoinstall.services.gpg import GpgKeyring, SignatureChecker
from rpi_autoinstall.services.injector import Injector
from rpi_autoinstall.services.resolver import SourceResolver
from rpi_autoinstall.services.verifier import Verifier
from rpi_autoinstall.storage.block import BlockDevices, make_block_devices
from rpi_autoinstall.storage.command_runners import require_tools
from rpi_autoinstall.storage.loop_mount import LoopMounter


TEMP_PREFIX = "rpi-autoinstall-"


def run_pipeline(
    config: PipelineConfig,
    *,
    fetcher: Optional[Fetcher] = None,
    signatures: Optional[SignatureChecker] = None,
    devices: Optional[BlockDevices] = None,
    injector: Optional[Injector] = None,
    guard: Optional[CleanupGuard] = None,
) -> PipelineResult:
    """Build one autoinstall image.

    Raises:
        AutoinstallError: Any stage failure; all acquired resources have been
            released by the time it propagates
    """
    config.validate()
    guard = guard or CleanupGuard()

    with operation_context("build", channel=config.channel.value):
        log = LoggerFactory.for_pipeline()
        log.info("👶 Starting up...")
        with guard:
            tmpdir = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
            guard.register(lambda: _remove_tmpdir(tmpdir, log), f"delete {tmpdir}")
            log.info(f"📁 Created temporary working directory {tmpdir}")

            log.info("🔎 Checking for required utilities...")
            if devices is None:
                devices = make_block_devices(config.block_backend, tmpdir / "mnt")
            devices.preflight()
            if signatures is None and config.verify:
                require_tools(["gpg"])
                signatures = GpgKeyring(tmpdir / "gnupg", config.mirror.keyserver)
            log.info("👍 All required utilities are installed.")

            fetcher = fetcher or Downloader(config.mirror.download_timeout_seconds)
            config.work_dir.mkdir(parents=True, exist_ok=True)

            source = SourceResolver(fetcher, config.mirror).resolve(config)
            if source.user_supplied:
                log.info(f"☑️ Using existing {source.local_path} file.")
            else:
                fetcher.fetch(source.image_url, source.local_path)

            digest = None
            if config.verify:
                verifier = Verifier(fetcher, signatures, config.work_dir)
                record = verifier.prepare(source)
                digest = verifier.verify(source.local_path, record).image_digest
            else:
                log.warning("🤞 Skipping verification of source image.")

            destination = config.destination_path
            mounter = LoopMounter(devices)
            discard = mounter.prepare(source.local_path, destination, guard)
            handle = mounter.attach(destination, guard)
            (injector or Injector()).inject(handle, config.provisioning_files)
            guard.cancel(discard)

        log.success(f"✅ Completed. Image written to {destination}")

    return PipelineResult(
        source=source,
        destination=destination,
        verified=config.verify,
        image_digest=digest,
    )


def _remove_tmpdir(tmpdir: Path, log) -> None:
    """Delete the run's temp dir, unless something is still mounted inside it."""
    if not tmpdir.exists():
        return
    for root, dirs, _files in os.walk(tmpdir):
        for name in dirs:
            path = os.path.join(root, name)
            if os.path.ismount(path):
                log.error(f"{path} is still mounted; leaving {tmpdir} in place")
                return
    shutil.rmtree(tmpdir)
    log.info(f"🚽 Deleted temporary working directory {tmpdir}")
