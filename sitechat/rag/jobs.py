"""Registry of indexing jobs keyed by (pipeline, source URL)."""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sitechat.models import IndexingJob


def job_key(pipeline_id: str, url: str) -> str:
    return f"{pipeline_id}:{url}"


class JobStore(ABC):
    """Key/value store for jobs with an atomic compare-and-swap.

    compare_and_swap is the only mutual exclusion between indexing requests,
    so implementations backed by shared storage must make it atomic there.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[IndexingJob]:
        ...

    @abstractmethod
    def set(self, key: str, job: IndexingJob) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def compare_and_swap(
        self, key: str, expected: Optional[IndexingJob], new: Optional[IndexingJob]
    ) -> bool:
        """Replace the job under key if it is still `expected`.

        Args:
            key: Job key
            expected: The record the caller last saw (None for "absent")
            new: Replacement record; None deletes the key

        Returns:
            True if the swap happened
        """


class InMemoryJobStore(JobStore):
    """Process-local job store."""

    def __init__(self):
        self._jobs: Dict[str, IndexingJob] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[IndexingJob]:
        with self._lock:
            return self._jobs.get(key)

    def set(self, key: str, job: IndexingJob) -> None:
        with self._lock:
            self._jobs[key] = job

    def delete(self, key: str) -> None:
        with self._lock:
            self._jobs.pop(key, None)

    def compare_and_swap(
        self, key: str, expected: Optional[IndexingJob], new: Optional[IndexingJob]
    ) -> bool:
        with self._lock:
            if self._jobs.get(key) is not expected:
                return False
            if new is None:
                self._jobs.pop(key, None)
            else:
                self._jobs[key] = new
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
