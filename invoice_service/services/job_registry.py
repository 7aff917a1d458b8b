from typing import Dict, Iterator, List, Optional, Sequence
from datetime import datetime, timezone
from enum import Enum
from invoice_service.services.status_store import StatusStore
import math
import uuid
import logging

logger = logging.getLogger(__name__)

class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"

class ProcessingJob:
    """One processing request: its inputs, batch size and its own status store"""

    def __init__(self, input_ids: Sequence[str], batch_size: int, job_id: Optional[str] = None):
        if not input_ids:
            raise ValueError("input_ids must not be empty")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.job_id = job_id or str(uuid.uuid4())
        self.input_ids: List[str] = list(input_ids)
        self.batch_size = batch_size
        self.status_store = StatusStore()
        self.state = JobState.PENDING
        self.created_at = datetime.now(timezone.utc)

    @property
    def total_batches(self) -> int:
        return math.ceil(len(self.input_ids) / self.batch_size)

    def partition(self) -> Iterator[List[str]]:
        for i in range(0, len(self.input_ids), self.batch_size):
            yield self.input_ids[i:i + self.batch_size]

    def __repr__(self):
        return (
            f"ProcessingJob(job_id={self.job_id!r}, items={len(self.input_ids)}, "
            f"batch_size={self.batch_size}, state={self.state.value!r})"
        )


class JobRegistry:
    """Jobs known to this process, newest last.

    At most ``max_finished_jobs`` completed jobs are kept; the oldest are
    forgotten when a new job is created. Pending and running jobs are never
    evicted.
    """

    def __init__(self, max_finished_jobs: int = 20):
        if max_finished_jobs < 0:
            raise ValueError("max_finished_jobs must not be negative")
        self.max_finished_jobs = max_finished_jobs
        self._jobs: Dict[str, ProcessingJob] = {}

    def create(self, input_ids: Sequence[str], batch_size: int) -> ProcessingJob:
        job = ProcessingJob(input_ids, batch_size)
        self._evict_finished()
        self._jobs[job.job_id] = job
        logger.info(f"Registered job {job.job_id} with {len(job.input_ids)} items")
        return job

    def get(self, job_id: str) -> Optional[ProcessingJob]:
        return self._jobs.get(job_id)

    def latest(self) -> Optional[ProcessingJob]:
        if not self._jobs:
            return None
        return next(reversed(self._jobs.values()))

    def jobs(self) -> List[ProcessingJob]:
        return list(self._jobs.values())

    def active_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state is JobState.RUNNING)

    def _evict_finished(self):
        finished = [job_id for job_id, job in self._jobs.items() if job.state is JobState.COMPLETED]
        for job_id in finished[:max(0, len(finished) - self.max_finished_jobs)]:
            del self._jobs[job_id]
            logger.debug(f"Evicted finished job {job_id}")

    def clear(self):
        """Reset statuses between jobs; running jobs stay registered"""
        for job_id, job in list(self._jobs.items()):
            job.status_store.clear()
            if job.state is not JobState.RUNNING:
                del self._jobs[job_id]
