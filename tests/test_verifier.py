"""Tests for signature and digest verification."""

import hashlib

import pytest

from fakes import FakeFetcher, FakeSignatures
from rpi_autoinstall.domain import ImageSource, VerificationRecord
from rpi_autoinstall.exceptions import DigestMismatchError, SignatureError
from rpi_autoinstall.services import verifier as verifier_module
from rpi_autoinstall.services.verifier import Verifier, compute_sha256, manifest_digests


def _record(cached_daily, mirror):
    return VerificationRecord(
        manifest_path=cached_daily.manifest,
        signature_path=cached_daily.signature,
        keyring_path=cached_daily.keyring,
        signing_key_id=mirror.signing_key_id,
    )


class TestHelpers:
    """Test hashing and manifest parsing."""

    def test_compute_sha256(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"x" * 10_000)
        assert compute_sha256(path, chunk_size=1000) == hashlib.sha256(b"x" * 10_000).hexdigest()

    def test_manifest_digests(self):
        text = (
            f"{'a' * 64} *ubuntu.img.xz\n"
            "\n"
            f"{'B' * 64}  other.img.xz\n"
            "not-a-digest file\n"
        )
        assert manifest_digests(text) == {"a" * 64, "b" * 64}

    def test_file_name_is_not_a_digest(self):
        """Test a digest-looking file name does not count as an entry."""
        assert manifest_digests(f"{'0' * 64} *{'c' * 64}\n") == {"0" * 64}


class TestPrepare:
    """Test fetching of manifest and signature."""

    def _source(self, work_dir, mirror, user_supplied=False):
        return ImageSource(
            url=mirror.daily_url,
            filename=mirror.daily_image,
            sha_manifest_name="SHA256SUMS-2024-05-01",
            sha_signature_name="SHA256SUMS-2024-05-01.gpg",
            signing_key_id=mirror.signing_key_id,
            local_path=work_dir / "ubuntu-original-2024-05-01.img.xz",
            user_supplied=user_supplied,
        )

    def test_downloads_under_namespaced_names(self, work_dir, mirror):
        """Test remote SHA256SUMS files are cached under dated names."""
        fetcher = FakeFetcher(
            {
                mirror.daily_url + "SHA256SUMS": b"sums",
                mirror.daily_url + "SHA256SUMS.gpg": b"sig",
            }
        )

        record = Verifier(fetcher, FakeSignatures(), work_dir).prepare(
            self._source(work_dir, mirror)
        )

        assert record.manifest_path == work_dir / "SHA256SUMS-2024-05-01"
        assert record.signature_path == work_dir / "SHA256SUMS-2024-05-01.gpg"
        assert record.keyring_path == work_dir / f"{mirror.signing_key_id}.keyring"
        assert record.manifest_path.read_bytes() == b"sums"
        assert record.signature_path.read_bytes() == b"sig"

    def test_cached_files_are_not_refetched(self, cached_daily, work_dir, mirror):
        fetcher = FakeFetcher()

        Verifier(fetcher, FakeSignatures(), work_dir).prepare(self._source(work_dir, mirror))

        assert fetcher.calls == []


class TestVerify:
    """Test the two trust gates."""

    def test_success_records_digest(self, cached_daily, work_dir, mirror):
        """Test a valid signature and listed digest pass."""
        signatures = FakeSignatures()
        verifier = Verifier(FakeFetcher(), signatures, work_dir)

        record = verifier.verify(cached_daily.image, _record(cached_daily, mirror))

        assert record.image_digest == cached_daily.digest
        assert signatures.events == [
            ("cached-key", mirror.signing_key_id),
            ("verify", "SHA256SUMS-2024-05-01.gpg", "SHA256SUMS-2024-05-01"),
        ]

    def test_bad_signature_stops_before_digest(self, cached_daily, work_dir, mirror, mocker):
        """Test the manifest is never read and the image never hashed on a bad signature."""
        read_manifest = mocker.spy(verifier_module, "_read_manifest")
        hash_image = mocker.spy(verifier_module, "compute_sha256")
        verifier = Verifier(FakeFetcher(), FakeSignatures(valid=False), work_dir)

        with pytest.raises(SignatureError):
            verifier.verify(cached_daily.image, _record(cached_daily, mirror))

        read_manifest.assert_not_called()
        hash_image.assert_not_called()

    def test_signature_by_other_key(self, cached_daily, work_dir, mirror):
        """Test a valid signature from an unexpected key is rejected."""
        verifier = Verifier(FakeFetcher(), FakeSignatures(fingerprint="F" * 40), work_dir)

        with pytest.raises(SignatureError, match="signed by"):
            verifier.verify(cached_daily.image, _record(cached_daily, mirror))

    def test_digest_mismatch(self, cached_daily, work_dir, mirror):
        """Test a tampered image fails the digest gate."""
        cached_daily.image.write_bytes(b"tampered")
        verifier = Verifier(FakeFetcher(), FakeSignatures(), work_dir)

        with pytest.raises(DigestMismatchError) as exc_info:
            verifier.verify(cached_daily.image, _record(cached_daily, mirror))

        assert exc_info.value.digest == hashlib.sha256(b"tampered").hexdigest()

    def test_missing_keyring_is_fetched_first(self, cached_daily, work_dir, mirror):
        """Test the key is imported before the signature check."""
        cached_daily.keyring.unlink()
        signatures = FakeSignatures()

        Verifier(FakeFetcher(), signatures, work_dir).verify(
            cached_daily.image, _record(cached_daily, mirror)
        )

        assert [event[0] for event in signatures.events] == ["recv-key", "verify"]
