"""Pick the remote image a run targets.

Daily builds have a fixed file name and are namespaced locally by date.
Point releases are discovered by scanning the release index for file names
matching the release pattern (``ubuntu-<version>-preinstalled-server-arm64+raspi.img.xz``);
the newest version wins and namespaces the cached checksum files.
"""

from __future__ import annotations

import re
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional

from rpi_autoinstall.config.settings import MirrorConfig
from rpi_autoinstall.domain import ImageSource, PipelineConfig, ReleaseChannel
from rpi_autoinstall.domain.models import REMOTE_MANIFEST_NAME, REMOTE_SIGNATURE_NAME
from rpi_autoinstall.exceptions import DownloadError, ResolutionError
from rpi_autoinstall.logging import LoggerFactory
from rpi_autoinstall.services.downloader import Fetcher


log = LoggerFactory.for_resolve()


def version_key(version: str) -> tuple[int, ...]:
    """Sortable key for dotted versions ("22.04" < "22.04.1" < "22.04.10")."""
    return tuple(int(part) for part in version.split("."))


def release_version(filename: str) -> str:
    """Version field of a release file name (second dash-separated field)."""
    parts = filename.split("-")
    if len(parts) < 2:
        raise ResolutionError(f"Cannot extract a version from {filename}")
    return parts[1]


def select_newest(candidates: Iterable[str]) -> tuple[str, str]:
    """Return ``(filename, version)`` of the single newest candidate.

    Raises:
        ResolutionError: No candidates, or several distinct names share the
            newest version
    """
    names = sorted(set(candidates))
    if not names:
        raise ResolutionError("No release image matches the expected naming pattern")
    by_version: dict[tuple[int, ...], list[str]] = {}
    for name in names:
        by_version.setdefault(version_key(release_version(name)), []).append(name)
    newest = max(by_version)
    winners = by_version[newest]
    if len(winners) > 1:
        raise ResolutionError(
            f"Ambiguous release images for version {release_version(winners[0])}: "
            f"{', '.join(winners)}"
        )
    return winners[0], release_version(winners[0])


class SourceResolver:
    """Turn a release channel and a working directory into an ImageSource."""

    def __init__(self, fetcher: Fetcher, mirror: Optional[MirrorConfig] = None):
        self.fetcher = fetcher
        self.mirror = mirror or MirrorConfig()
        self.pattern = re.compile(self.mirror.release_image_pattern)

    def resolve(self, config: PipelineConfig) -> ImageSource:
        if config.channel is ReleaseChannel.DAILY:
            source = self._resolve_daily(config)
        elif config.source_image is not None and not config.verify:
            source = self._resolve_local_release(config)
        else:
            source = self._resolve_release(config)
        if config.source_image is not None:
            source = _with_local_image(source, config.source_image)
        log.debug(f"Resolved source: {source.image_url} -> {source.local_path}")
        return source

    def _resolve_local_release(self, config: PipelineConfig) -> ImageSource:
        log.info("☑️ Skipping release lookup for the supplied source image.")
        return ImageSource(
            url=self.mirror.release_url,
            filename=config.source_image.name,
            sha_manifest_name=REMOTE_MANIFEST_NAME,
            sha_signature_name=REMOTE_SIGNATURE_NAME,
            signing_key_id=self.mirror.signing_key_id,
            local_path=config.source_image,
        )

    def _resolve_daily(self, config: PipelineConfig) -> ImageSource:
        suffix = config.today.isoformat()
        return ImageSource(
            url=self.mirror.daily_url,
            filename=self.mirror.daily_image,
            sha_manifest_name=f"SHA256SUMS-{suffix}",
            sha_signature_name=f"SHA256SUMS-{suffix}.gpg",
            signing_key_id=self.mirror.signing_key_id,
            local_path=config.work_dir / f"ubuntu-original-{suffix}{_image_suffix(self.mirror.daily_image)}",
        )

    def _resolve_release(self, config: PipelineConfig) -> ImageSource:
        if config.offline:
            log.info("🔎 Checking for cached release images...")
            candidates = self.find_cached_releases(config.work_dir)
        else:
            log.info("🔎 Checking for current release...")
            candidates = self.find_remote_releases()
        filename, version = select_newest(candidates)
        log.info(f"💿 Current release is {version}")
        return ImageSource(
            url=self.mirror.release_url,
            filename=filename,
            sha_manifest_name=f"SHA256SUMS-{version}",
            sha_signature_name=f"SHA256SUMS-{version}.gpg",
            signing_key_id=self.mirror.signing_key_id,
            local_path=config.work_dir / filename,
            version=version,
        )

    def find_remote_releases(self) -> list[str]:
        """File names in the release index matching the release pattern."""
        url = self.mirror.release_url
        try:
            index = self.fetcher.fetch_text(url)
        except DownloadError as error:
            raise ResolutionError(
                f"Cannot query release index: {error.reason}", index_url=url
            ) from error
        return [match.group(0) for match in self.pattern.finditer(index)]

    def find_cached_releases(self, work_dir: Path) -> list[str]:
        """File names of release images already present in ``work_dir``."""
        if not work_dir.is_dir():
            return []
        return [p.name for p in work_dir.iterdir() if self.pattern.fullmatch(p.name)]


def _image_suffix(filename: str) -> str:
    """".img.xz" for "jammy-...+raspi.img.xz"."""
    name = Path(filename).name
    index = name.find(".img")
    return name[index:] if index >= 0 else "".join(Path(name).suffixes)


def _with_local_image(source: ImageSource, image: Path) -> ImageSource:
    return replace(source, local_path=image.resolve(), user_supplied=True)
