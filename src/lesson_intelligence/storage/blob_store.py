"""
Blob storage for source documents and binary stage artifacts.

Blobs are addressed by deterministic keys so that re-running a unit
overwrites its previous output instead of creating a duplicate:

    jobs/<job_id>/<stage>/<unit_index:04d>.<ext>
    documents/<user_id>/<document_id>.pdf

Signed URLs carry an expiry timestamp and an HMAC-SHA256 signature over the
key and expiry, so they can be handed to clients and verified later without
any server-side state.

Classes:
    BlobStore: Abstract blob store interface.
    LocalBlobStore: Filesystem-backed implementation with atomic writes.

Functions:
    artifact_key: Build the blob key of a unit artifact.
    document_key: Build the blob key of a source document.
"""

import hashlib
import hmac
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from ..models.data_structures import Stage
from ..utils.error_handlers import BlobStoreError
from ..utils.file_utils import atomic_write_bytes, ensure_directory, is_path_safe

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+(/[A-Za-z0-9._-]+)*$")


def artifact_key(job_id: str, stage: Stage, unit_index: int, extension: str) -> str:
    """Deterministic blob key of a unit artifact."""
    return f"jobs/{job_id}/{stage.value}/{unit_index:04d}.{extension.lstrip('.')}"


def safe_segment(value: str) -> str:
    """Replace characters not allowed in a key segment with underscores."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", value).strip(".") or "_"


def document_key(user_id: str, document_id: str) -> str:
    """Blob key of a user's source document."""
    return f"documents/{safe_segment(user_id)}/{safe_segment(document_id)}.pdf"


def validate_key(key: str) -> str:
    """
    Check that a key is a relative path of safe segments.

    Raises:
        BlobStoreError: If the key is empty, absolute or contains '..'.
    """
    if not key or not _KEY_PATTERN.match(key) or ".." in key.split("/"):
        raise BlobStoreError(f"Invalid blob key: {key!r}", key=key, operation="validate")
    return key


class BlobStore(ABC):
    """Abstract blob store."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store `data` under `key`, replacing any previous blob. Returns its URL."""
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        pass

    @abstractmethod
    def verify_signed_url(self, url: str) -> str:
        """Return the key of a valid, unexpired signed URL.

        Raises:
            BlobStoreError: If the signature is invalid or expired.
        """
        pass


class LocalBlobStore(BlobStore):
    """
    Blob store on the local filesystem.

    Writes go through a temporary file and an atomic rename, so readers see
    either the previous blob or the complete new one.

    Attributes:
        root_dir: Directory holding all blobs.
        base_url: Prefix of signed URLs.
    """

    def __init__(
        self,
        root_dir: str,
        signing_secret: str,
        base_url: str = "/blobs",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not signing_secret:
            raise BlobStoreError("A signing secret is required", operation="init")

        self.root_dir = str(Path(root_dir).resolve())
        self.base_url = base_url.rstrip("/")
        self._secret = signing_secret.encode("utf-8")
        self._clock = clock
        ensure_directory(self.root_dir)

        logger.info(f"LocalBlobStore initialized at {self.root_dir}")

    def _path_for(self, key: str) -> str:
        path = os.path.join(self.root_dir, *validate_key(key).split("/"))
        if not is_path_safe(path, self.root_dir):
            raise BlobStoreError(f"Key escapes blob root: {key}", key=key, operation="resolve")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        try:
            atomic_write_bytes(path, data)
        except OSError as e:
            raise BlobStoreError(
                f"Failed to write blob {key}: {e}", key=key, operation="put", original_error=e
            ) from e
        logger.debug(f"Stored blob {key} ({len(data)} bytes, {content_type})")
        return f"{self.base_url}/{quote(key)}"

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise BlobStoreError(
                f"Blob not found: {key}", key=key, operation="get", original_error=e
            ) from e
        except OSError as e:
            raise BlobStoreError(
                f"Failed to read blob {key}: {e}", key=key, operation="get", original_error=e
            ) from e

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path_for(key))

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        validate_key(key)
        if ttl_seconds <= 0:
            raise BlobStoreError(
                f"ttl_seconds must be positive, got {ttl_seconds}", key=key, operation="sign"
            )
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.base_url}/{quote(key)}?{query}"

    def verify_signed_url(self, url: str) -> str:
        parts = urlsplit(url)
        prefix = urlsplit(self.base_url).path.rstrip("/") + "/"
        if not parts.path.startswith(prefix):
            raise BlobStoreError(f"URL not issued by this store: {url}", operation="verify")

        key = unquote(parts.path[len(prefix):])
        params = parse_qs(parts.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError) as e:
            raise BlobStoreError(
                "Signed URL is missing expiry or signature", key=key, operation="verify"
            ) from e

        validate_key(key)
        if not hmac.compare_digest(signature, self._signature(key, expires)):
            raise BlobStoreError("Invalid URL signature", key=key, operation="verify")
        if expires < int(self._clock()):
            raise BlobStoreError("Signed URL has expired", key=key, operation="verify")
        return key
