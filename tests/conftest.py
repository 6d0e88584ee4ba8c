"""
Pytest configuration and shared fixtures for rpi-autoinstall tests.
"""

import asyncio
import hashlib
import lzma
import socket
import sys
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Dict

import pytest
from aiohttp import web
from loguru import logger

from fakes import RAW_IMAGE, TODAY, USER_DATA_50
from rpi_autoinstall.config import settings
from rpi_autoinstall.config.settings import MirrorConfig
from rpi_autoinstall.domain import PipelineConfig


# ==============================================================================
# Logging
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop any sinks a test installed (file sinks, enqueue threads)."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point settings at a per-test file so the operator's config is never read."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = {}
    settings.load_settings()
    yield
    settings.settings_store.values = {}


# ==============================================================================
# File system fixtures
# ==============================================================================


@pytest.fixture
def boot_dir(tmp_path) -> Path:
    """A 'system-boot' partition carrying the stock cloud-init files."""
    path = tmp_path / "system-boot"
    path.mkdir()
    (path / "user-data").write_text("#cloud-config\n# original user-data\n")
    (path / "meta-data").write_text("instance_id: original\n")
    (path / "cmdline.txt").write_text("console=serial0,115200\n")
    return path


@pytest.fixture
def user_data_file(tmp_path) -> Path:
    path = tmp_path / "inputs" / "user-data.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(USER_DATA_50)
    return path


@pytest.fixture
def meta_data_file(tmp_path) -> Path:
    path = tmp_path / "inputs" / "meta-data"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("instance_id: pi-lab-01\n")
    return path


@pytest.fixture
def work_dir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def compressed_image() -> bytes:
    return lzma.compress(RAW_IMAGE)


@pytest.fixture
def mirror() -> MirrorConfig:
    return MirrorConfig(
        daily_url="https://images.test/daily/",
        release_url="https://images.test/releases/22.04/release/",
    )


@pytest.fixture
def pipeline_config(user_data_file, work_dir, mirror) -> PipelineConfig:
    return PipelineConfig(
        user_data_file=user_data_file,
        work_dir=work_dir,
        mirror=mirror,
        today=TODAY,
    )


@pytest.fixture
def cached_daily(work_dir, compressed_image, mirror) -> SimpleNamespace:
    """Image, signed manifest and keyring already present in the work dir."""
    image = work_dir / "ubuntu-original-2024-05-01.img.xz"
    image.write_bytes(compressed_image)
    digest = hashlib.sha256(compressed_image).hexdigest()
    manifest = work_dir / "SHA256SUMS-2024-05-01"
    manifest.write_text(
        f"{'0' * 64} *jammy-preinstalled-server-amd64.img.xz\n"
        f"{digest} *{mirror.daily_image}\n"
    )
    signature = work_dir / "SHA256SUMS-2024-05-01.gpg"
    signature.write_bytes(b"-----BEGIN PGP SIGNATURE-----\n")
    keyring = work_dir / f"{mirror.signing_key_id}.keyring"
    keyring.write_bytes(b"keyring")
    return SimpleNamespace(
        image=image, digest=digest, manifest=manifest, signature=signature, keyring=keyring
    )


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


# ==============================================================================
# HTTP server
# ==============================================================================


@pytest.fixture
def http_server():
    """A real aiohttp server on 127.0.0.1 serving ``routes`` (path -> (status, body))."""
    routes: Dict[str, tuple] = {}
    requests: list[str] = []

    async def handler(request):
        requests.append(request.path)
        status, body = routes.get(request.path, (404, b"not found"))
        return web.Response(status=status, body=body)

    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", handler)

    loop = asyncio.new_event_loop()
    runner = web.AppRunner(app)
    loop.run_until_complete(runner.setup())
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    site = web.SockSite(runner, sock)
    loop.run_until_complete(site.start())
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()

    yield SimpleNamespace(url=f"http://127.0.0.1:{port}", routes=routes, requests=requests)

    asyncio.run_coroutine_threadsafe(runner.cleanup(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()
