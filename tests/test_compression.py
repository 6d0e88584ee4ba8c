"""Tests for image compression detection and extraction."""

import gzip
import lzma
from pathlib import Path

import pytest

from fakes import RAW_IMAGE
from rpi_autoinstall.exceptions import MountError
from rpi_autoinstall.storage.compression import extract_image, get_compression_type


class TestGetCompressionType:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("ubuntu.img.xz", "xz"),
            ("ubuntu.img.gz", "gzip"),
            ("ubuntu.img", None),
        ],
    )
    def test_detects_from_name(self, name, expected):
        assert get_compression_type(Path(name)) == expected


class TestExtractImage:
    """Test extract_image."""

    def test_xz(self, tmp_path):
        """Test xz sources are decompressed and left untouched."""
        source = tmp_path / "ubuntu.img.xz"
        compressed = lzma.compress(RAW_IMAGE)
        source.write_bytes(compressed)
        destination = tmp_path / "out" / "ubuntu-autoinstall.img"

        assert extract_image(source, destination) == destination

        assert destination.read_bytes() == RAW_IMAGE
        assert source.read_bytes() == compressed

    def test_gzip(self, tmp_path):
        source = tmp_path / "ubuntu.img.gz"
        source.write_bytes(gzip.compress(RAW_IMAGE))
        destination = tmp_path / "out.img"

        extract_image(source, destination)

        assert destination.read_bytes() == RAW_IMAGE

    def test_raw_copy(self, tmp_path):
        source = tmp_path / "ubuntu.img"
        source.write_bytes(RAW_IMAGE)
        destination = tmp_path / "out.img"

        extract_image(source, destination)

        assert destination.read_bytes() == RAW_IMAGE
        assert source.read_bytes() == RAW_IMAGE

    def test_overwrites_existing_destination(self, tmp_path):
        source = tmp_path / "ubuntu.img"
        source.write_bytes(RAW_IMAGE)
        destination = tmp_path / "out.img"
        destination.write_bytes(b"stale")

        extract_image(source, destination)

        assert destination.read_bytes() == RAW_IMAGE

    def test_corrupt_archive(self, tmp_path):
        """Test a corrupt source fails without leaving output behind."""
        source = tmp_path / "ubuntu.img.xz"
        source.write_bytes(b"definitely not xz")
        destination = tmp_path / "out.img"

        with pytest.raises(MountError, match="Cannot extract"):
            extract_image(source, destination)

        assert not destination.exists()
        assert not (tmp_path / "out.img.part").exists()

    def test_refuses_to_extract_onto_source(self, tmp_path):
        source = tmp_path / "ubuntu.img"
        source.write_bytes(RAW_IMAGE)

        with pytest.raises(MountError, match="onto itself"):
            extract_image(source, source)

        assert source.read_bytes() == RAW_IMAGE
