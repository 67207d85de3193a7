"""
File utilities for the Lesson Intelligence System.

Provides functions for identifiers, directory management and atomic writes.
"""

import os
import uuid
from datetime import datetime


def ensure_directory(path: str) -> None:
    """
    Create directory if it doesn't exist.

    Args:
        path: Directory path to create
    """
    os.makedirs(path, exist_ok=True)


def generate_unique_id(prefix: str = "") -> str:
    """
    Generate unique ID with optional prefix.

    Format: PREFIX-YYYYMMDD-HHMMSS-UUID
    Example: JOB-20251102-143022-a1b2c3d4

    Args:
        prefix: Optional prefix (e.g., 'JOB', 'RUN')

    Returns:
        Unique ID string
    """
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    unique_suffix = uuid.uuid4().hex[:8]

    if prefix:
        return f"{prefix}-{timestamp}-{unique_suffix}"
    return f"{timestamp}-{unique_suffix}"


def is_path_safe(path: str, base_dir: str) -> bool:
    """
    Check if path is safe (doesn't escape base directory).

    Args:
        path: Path to check
        base_dir: Base directory that should contain the path

    Returns:
        True if path is safe, False otherwise
    """
    try:
        abs_path = os.path.abspath(path)
        abs_base = os.path.abspath(base_dir)
        return os.path.commonpath([abs_path, abs_base]) == abs_base
    except (ValueError, OSError):
        return False


def atomic_write_bytes(file_path: str, content: bytes) -> None:
    """
    Write binary file atomically using temporary file and rename.

    Readers never observe a partially written file.

    Args:
        file_path: Destination file path
        content: Bytes to write

    Raises:
        OSError: If write fails
    """
    directory = os.path.dirname(file_path)
    if directory:
        ensure_directory(directory)

    temp_path = f"{file_path}.tmp.{uuid.uuid4().hex[:8]}"

    try:
        with open(temp_path, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, file_path)
    except OSError as e:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise OSError(f"Atomic write failed for {file_path}: {e}") from e
