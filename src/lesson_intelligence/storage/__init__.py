"""Blob storage for documents and binary artifacts."""

from .blob_store import BlobStore, LocalBlobStore, artifact_key, document_key

__all__ = ["BlobStore", "LocalBlobStore", "artifact_key", "document_key"]
