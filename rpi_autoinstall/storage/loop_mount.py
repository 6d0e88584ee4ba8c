"""Expose an image's first partition as a mounted directory."""

from __future__ import annotations

from pathlib import Path

from rpi_autoinstall.domain import MountHandle
from rpi_autoinstall.exceptions import MountError, WrongImageError
from rpi_autoinstall.logging import LoggerFactory
from rpi_autoinstall.services.cleanup import CleanupGuard
from rpi_autoinstall.storage.block import BlockDevices
from rpi_autoinstall.storage.compression import extract_image


log = LoggerFactory.for_mount()


class LoopMounter:
    """Extracts an image, attaches it as a loop device and mounts partition 1.

    Every resource is registered with the ``CleanupGuard`` the moment it is
    acquired, so the caller never holds an unreleased loop device or mount.
    """

    def __init__(self, devices: BlockDevices):
        self.devices = devices

    def prepare(self, source: Path, destination: Path, guard: CleanupGuard):
        """Extract ``source`` into ``destination``.

        Returns the release token that discards the destination; the caller
        cancels it once the image is complete.
        """
        extract_image(source, destination)
        return guard.register(
            lambda: _discard_incomplete(destination),
            f"discard incomplete image {destination}",
        )

    def attach(self, image_path: Path, guard: CleanupGuard) -> MountHandle:
        """Attach ``image_path`` and mount its first partition.

        An already-mounted first partition (e.g. automounted by the desktop)
        is reused rather than mounted twice.

        Raises:
            MountError: Loop setup, partition lookup or mount failed
            WrongImageError: The partition lacks the provisioning files
        """
        loop = self.devices.attach(image_path)
        detach = guard.register(lambda: self._detach(loop), f"delete loop {loop}")
        log.info(f"🔁 Created loop {loop}")

        partition = self.devices.first_partition(loop)
        if partition is None:
            raise MountError(f"Loop device {loop} has no partitions")

        mount_point = self.devices.mount_point(partition)
        if mount_point is None:
            mount_point = self.devices.mount(partition)
        else:
            log.debug(f"{partition} already mounted at {mount_point}")
        unmount = guard.register(
            lambda: self._unmount(partition), f"unmount {partition}"
        )
        log.info(f"👍 Mounted system-boot to {mount_point}")

        handle = MountHandle(
            loop_device_path=loop,
            partition_device_path=partition,
            mount_point=Path(mount_point),
            image_path=Path(image_path),
        )
        missing = handle.missing_provisioning_files()
        if missing:
            guard.release(unmount, detach)
            raise WrongImageError(partition, missing)
        return handle

    def _unmount(self, partition: str) -> None:
        log.info("📦 Unmounting an image...")
        self.devices.unmount(partition)

    def _detach(self, loop: str) -> None:
        self.devices.detach(loop)
        log.info(f"🔁 Deleted loop {loop}")


def _discard_incomplete(destination: Path) -> None:
    if destination.exists():
        destination.unlink()
        log.warning(f"Removed incomplete image {destination}")
