"""Loop devices and partition mounts.

Two interchangeable backends implement the ``BlockDevices`` capability:

- ``UdisksBlockDevices`` talks to udisks2 through ``udisksctl``. It works
  without root and udisks chooses the mount point (usually
  ``/media/$USER/<label>``).
- ``LosetupBlockDevices`` uses ``losetup``/``mount`` directly. It needs root
  and mounts under a directory supplied by the caller.

Device and partition facts are read from ``losetup --json`` and
``lsblk --json`` instead of scraping human-readable tool output.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from rpi_autoinstall.exceptions import CommandError, ConfigError, MountError
from rpi_autoinstall.logging import LoggerFactory
from rpi_autoinstall.storage.command_runners import (
    require_tools,
    run_checked_command,
    run_command,
    run_json_command,
)


log = LoggerFactory.for_mount()

LSBLK_COLUMNS = "NAME,PATH,TYPE,MOUNTPOINT"


class BlockDevices(Protocol):
    """What the loop mounter needs from the OS."""

    def preflight(self) -> None:
        ...

    def attach(self, image: Path) -> str:
        ...

    def first_partition(self, loop_device: str) -> Optional[str]:
        ...

    def mount_point(self, partition: str) -> Optional[Path]:
        ...

    def mount(self, partition: str) -> Path:
        ...

    def unmount(self, partition: str) -> None:
        ...

    def detach(self, loop_device: str) -> None:
        ...


# ==============================================================================
# lsblk helpers
# ==============================================================================


def get_children(device: dict) -> list[dict]:
    return list(device.get("children") or [])


def get_mountpoint(device: dict) -> Optional[str]:
    """Mount point of an lsblk node; handles both old and new lsblk JSON."""
    mountpoint = device.get("mountpoint")
    if mountpoint:
        return mountpoint
    for candidate in device.get("mountpoints") or []:
        if candidate:
            return candidate
    return None


def node_path(device: dict) -> Optional[str]:
    path = device.get("path")
    if path:
        return path
    name = device.get("name")
    return f"/dev/{name}" if name else None


def lsblk_tree(device: str) -> list[dict]:
    data = run_json_command(["lsblk", "--json", "--output", LSBLK_COLUMNS, device])
    return list(data.get("blockdevices") or [])


def find_first_partition(tree: Sequence[dict]) -> Optional[dict]:
    """First ``part`` node below the top-level device, in table order."""
    for device in tree:
        for child in get_children(device):
            if child.get("type") == "part":
                return child
    return None


def find_node(tree: Sequence[dict], path: str) -> Optional[dict]:
    stack = list(tree)
    while stack:
        node = stack.pop()
        if node_path(node) == path:
            return node
        stack.extend(get_children(node))
    return None


class LsblkBlockDevices:
    """Partition and mount-point lookups shared by both backends."""

    tools: tuple[str, ...] = ("lsblk",)

    def preflight(self) -> None:
        require_tools(self.tools)

    def first_partition(self, loop_device: str) -> Optional[str]:
        self._settle()
        partition = find_first_partition(self._tree(loop_device))
        if partition is None:
            return None
        return node_path(partition)

    def mount_point(self, partition: str) -> Optional[Path]:
        node = find_node(self._tree(partition), partition)
        if node is None:
            return None
        mountpoint = get_mountpoint(node)
        return Path(mountpoint) if mountpoint else None

    def _tree(self, device: str) -> list[dict]:
        try:
            return lsblk_tree(device)
        except CommandError as error:
            raise MountError(f"Cannot inspect {device}: {error.output or error}") from error

    def _settle(self) -> None:
        # Partition nodes of a fresh loop device appear asynchronously.
        if shutil.which("udevadm"):
            run_command(["udevadm", "settle"], check=False)


def _checked(command: Sequence[str], action: str) -> str:
    try:
        return run_checked_command(command)
    except CommandError as error:
        raise MountError(f"Failed to {action}: {error.output or error}") from error


# ==============================================================================
# udisks2 backend
# ==============================================================================


def associated_loops(image: Path) -> set[str]:
    """Loop devices currently backed by ``image``.

    Raises:
        MountError: If losetup cannot list loop devices
    """
    try:
        data: Any = run_json_command(
            ["losetup", "--list", "--json", "--associated", str(image)]
        )
    except CommandError as error:
        raise MountError(
            f"Cannot list loop devices for {image}: {error.output or error}"
        ) from error
    return {
        entry["name"]
        for entry in (data.get("loopdevices") or [])
        if entry.get("name")
    }


class UdisksBlockDevices(LsblkBlockDevices):
    """Unprivileged backend using udisksctl."""

    tools = ("udisksctl", "losetup", "lsblk")

    def attach(self, image: Path) -> str:
        image = Path(image).resolve()
        before = associated_loops(image)
        _checked(
            ["udisksctl", "loop-setup", "--no-user-interaction", "--file", str(image)],
            f"set up loop device for {image}",
        )
        created = sorted(associated_loops(image) - before)
        if len(created) != 1:
            raise MountError(
                f"Expected one new loop device for {image}, found {created or 'none'}"
            )
        return created[0]

    def mount(self, partition: str) -> Path:
        _checked(
            ["udisksctl", "mount", "--no-user-interaction", "--block-device", partition],
            f"mount {partition}",
        )
        mountpoint = self.mount_point(partition)
        if mountpoint is None:
            raise MountError(f"{partition} reported no mount point after mounting")
        return mountpoint

    def unmount(self, partition: str) -> None:
        _checked(
            ["udisksctl", "unmount", "--no-user-interaction", "--block-device", partition],
            f"unmount {partition}",
        )

    def detach(self, loop_device: str) -> None:
        _checked(
            ["udisksctl", "loop-delete", "--no-user-interaction", "--block-device", loop_device],
            f"delete loop {loop_device}",
        )


# ==============================================================================
# losetup backend
# ==============================================================================


class LosetupBlockDevices(LsblkBlockDevices):
    """Root-only backend using losetup and mount(8)."""

    tools = ("losetup", "lsblk", "mount", "umount")

    def __init__(self, mount_root: Path):
        self.mount_root = Path(mount_root)

    def preflight(self) -> None:
        super().preflight()
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            raise ConfigError("The losetup backend must run as root; use --backend udisks")

    def attach(self, image: Path) -> str:
        output = _checked(
            ["losetup", "--find", "--show", "--partscan", str(Path(image).resolve())],
            f"set up loop device for {image}",
        )
        device = output.strip()
        if not device.startswith("/dev/"):
            raise MountError(f"losetup did not return a loop device for {image}")
        return device

    def mount(self, partition: str) -> Path:
        target = self.mount_root / Path(partition).name
        target.mkdir(parents=True, exist_ok=True)
        _checked(["mount", partition, str(target)], f"mount {partition}")
        return target

    def unmount(self, partition: str) -> None:
        _checked(["umount", partition], f"unmount {partition}")
        target = self.mount_root / Path(partition).name
        if target.is_dir() and not any(target.iterdir()):
            target.rmdir()

    def detach(self, loop_device: str) -> None:
        _checked(["losetup", "--detach", loop_device], f"delete loop {loop_device}")


def make_block_devices(backend: str, mount_root: Path) -> BlockDevices:
    if backend == "udisks":
        return UdisksBlockDevices()
    if backend == "losetup":
        return LosetupBlockDevices(mount_root)
    raise ConfigError(f"Unknown block device backend: {backend}")
