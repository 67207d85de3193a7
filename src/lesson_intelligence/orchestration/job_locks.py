"""
Per-job locks that live only while they are in use.

A job's lock is created by the first thread asking for it and dropped when
the last holder or waiter releases it, so the registry stays as large as
the number of jobs currently being worked on.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class JobLocks:
    """Registry of reference-counted per-job locks."""

    def __init__(self) -> None:
        self._entries: Dict[str, List] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    @contextmanager
    def hold(self, job_id: str) -> Iterator[None]:
        """Hold the lock of `job_id` for the duration of the block."""
        with self._registry_lock:
            entry = self._entries.get(job_id)
            if entry is None:
                entry = self._entries[job_id] = [threading.Lock(), 0]
            entry[1] += 1

        lock = entry[0]
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[job_id]
