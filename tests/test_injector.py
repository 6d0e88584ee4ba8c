"""Tests for provisioning file injection."""

import os

import pytest

from fakes import USER_DATA_50
from rpi_autoinstall.domain import MountHandle, ProvisioningFiles
from rpi_autoinstall.exceptions import InjectionError
from rpi_autoinstall.services import injector as injector_module
from rpi_autoinstall.services.injector import Injector, replace_file


@pytest.fixture
def handle(boot_dir, tmp_path):
    return MountHandle("/dev/loop7", "/dev/loop7p1", boot_dir, tmp_path / "out.img")


class TestInject:
    """Test Injector.inject."""

    def test_replaces_user_data_and_keeps_meta_data(self, handle, user_data_file, mocker):
        """Test only user-data changes without a meta-data override."""
        sync = mocker.patch.object(injector_module.os, "sync", create=True)
        original_meta = (handle.mount_point / "meta-data").read_bytes()

        Injector().inject(handle, ProvisioningFiles(user_data=user_data_file))

        assert (handle.mount_point / "user-data").read_bytes() == USER_DATA_50
        assert (handle.mount_point / "meta-data").read_bytes() == original_meta
        assert (handle.mount_point / "cmdline.txt").exists()
        sync.assert_called_once()

    def test_meta_data_override_lands_in_the_image(self, handle, user_data_file, meta_data_file):
        """Test the meta-data override is written into the mounted partition."""
        Injector().inject(
            handle, ProvisioningFiles(user_data=user_data_file, meta_data=meta_data_file)
        )

        assert (handle.mount_point / "meta-data").read_text() == "instance_id: pi-lab-01\n"
        assert meta_data_file.read_text() == "instance_id: pi-lab-01\n"

    def test_missing_source(self, handle, tmp_path):
        with pytest.raises(InjectionError, match="Cannot read"):
            Injector().inject(handle, ProvisioningFiles(user_data=tmp_path / "missing"))


class TestReplaceFile:
    """Test replace_file."""

    def test_write_failure(self, user_data_file, tmp_path, mocker):
        mocker.patch.object(
            injector_module.shutil, "copyfile", side_effect=OSError("read-only file system")
        )
        target = tmp_path / "user-data"

        with pytest.raises(InjectionError, match="read-only") as exc_info:
            replace_file(user_data_file, target)

        assert exc_info.value.target == target

    def test_creates_missing_target(self, user_data_file, tmp_path):
        target = tmp_path / "user-data"
        replace_file(user_data_file, target)
        assert target.read_bytes() == USER_DATA_50
        assert os.path.getsize(target) == 50
