"""
Unit tests for blob_store module.
"""

import os

import pytest

from lesson_intelligence.models.data_structures import Stage
from lesson_intelligence.storage.blob_store import (
    LocalBlobStore,
    artifact_key,
    document_key,
    validate_key,
)
from lesson_intelligence.utils.error_handlers import BlobStoreError


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestKeys:
    """Tests for deterministic key builders."""

    def test_artifact_key_is_zero_padded(self):
        assert artifact_key("JOB-1", Stage.INGEST, 7, "png") == "jobs/JOB-1/ingest/0007.png"

    def test_artifact_key_strips_extension_dot(self):
        assert artifact_key("JOB-1", Stage.ENRICH, 2, ".mp3") == "jobs/JOB-1/enrich/0002.mp3"

    def test_document_key_sanitizes_segments(self):
        assert document_key("a/b@c", "../x y") == "documents/a_b_c/_x_y.pdf"

    @pytest.mark.parametrize("key", ["", "/abs/path", "a/../b", "a//b", "a\\b"])
    def test_invalid_keys_are_rejected(self, key):
        with pytest.raises(BlobStoreError):
            validate_key(key)


class TestLocalBlobStore:
    """Tests for LocalBlobStore."""

    def test_put_get_roundtrip(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        url = store.put("jobs/J/ingest/0001.png", b"image", "image/png")

        assert url == "/blobs/jobs/J/ingest/0001.png"
        assert store.get("jobs/J/ingest/0001.png") == b"image"
        assert store.exists("jobs/J/ingest/0001.png")

    def test_put_replaces_previous_blob(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        store.put("k/a.bin", b"old", "application/octet-stream")
        store.put("k/a.bin", b"new", "application/octet-stream")

        assert store.get("k/a.bin") == b"new"
        # No temporary files are left behind
        assert os.listdir(tmp_path / "k") == ["a.bin"]

    def test_missing_blob_raises(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        assert not store.exists("k/missing.bin")
        with pytest.raises(BlobStoreError):
            store.get("k/missing.bin")

    def test_secret_is_required(self, tmp_path):
        with pytest.raises(BlobStoreError):
            LocalBlobStore(str(tmp_path), "")

    def test_signed_url_verifies(self, tmp_path):
        clock = FakeClock()
        store = LocalBlobStore(str(tmp_path), "secret", base_url="https://cdn.test/blobs", clock=clock)

        url = store.signed_url("jobs/J/enrich/0001.mp3", ttl_seconds=60)

        assert url.startswith("https://cdn.test/blobs/jobs/J/enrich/0001.mp3?")
        assert store.verify_signed_url(url) == "jobs/J/enrich/0001.mp3"

    def test_expired_url_is_rejected(self, tmp_path):
        clock = FakeClock()
        store = LocalBlobStore(str(tmp_path), "secret", clock=clock)
        url = store.signed_url("k/a.png", ttl_seconds=60)

        clock.now += 61

        with pytest.raises(BlobStoreError, match="expired"):
            store.verify_signed_url(url)

    def test_tampered_url_is_rejected(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        url = store.signed_url("k/a.png", ttl_seconds=60)

        with pytest.raises(BlobStoreError):
            store.verify_signed_url(url.replace("k/a.png", "k/b.png"))

    def test_url_from_other_secret_is_rejected(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        other = LocalBlobStore(str(tmp_path), "other-secret")

        with pytest.raises(BlobStoreError):
            store.verify_signed_url(other.signed_url("k/a.png", ttl_seconds=60))

    def test_non_positive_ttl_raises(self, tmp_path):
        store = LocalBlobStore(str(tmp_path), "secret")
        with pytest.raises(BlobStoreError):
            store.signed_url("k/a.png", ttl_seconds=0)
