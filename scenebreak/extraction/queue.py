"""
Extraction queue.

Decouples document submission from text extraction. Submitters enqueue and
return immediately; workers pull jobs, extract, and report back. All job
mutation (attempt increment, status transition, requeue) happens here under
one lock, so a job is handed to at most one worker at a time.

The queue is an explicitly constructed handle: open it at process start,
close it at shutdown, pass it to whoever needs it.
"""

import asyncio
import inspect
import time
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Union

from scenebreak.config import Settings, get_settings
from scenebreak.models import (
    Document,
    ExtractionJob,
    ExtractionResult,
    JobPayload,
    JobStatus,
    JobStatusReport,
    utcnow,
)
from scenebreak.utils.errors import ExtractionError, JobNotFoundError, QueueClosedError
from scenebreak.utils.logging import LogContext, get_logger
from scenebreak.utils.retry import BackoffPolicy, compact_error

logger = get_logger(__name__)

FailureCallback = Callable[[ExtractionJob], Union[None, Awaitable[None]]]


class ExtractionQueue:
    """In-process job queue with per-job exponential backoff."""

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        retention_seconds: Optional[int] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or get_settings()
        self.policy = policy or BackoffPolicy.from_settings(settings)
        self.retention = timedelta(
            seconds=retention_seconds
            if retention_seconds is not None
            else settings.job_retention_seconds
        )
        self._clock = clock
        self._jobs: Dict[str, ExtractionJob] = {}
        # Ids of jobs that are not terminal yet, oldest first
        self._order: List[str] = []
        self._condition = asyncio.Condition()
        self._failure_callbacks: List[FailureCallback] = []
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        async with self._condition:
            self._open = True
        logger.info("Extraction queue opened")

    async def close(self) -> None:
        """Stop accepting work and release idle workers. Queued jobs are kept."""
        async with self._condition:
            self._open = False
            self._condition.notify_all()
        logger.info(f"Extraction queue closed ({self._count(JobStatus.QUEUED)} jobs still queued)")

    async def __aenter__(self) -> "ExtractionQueue":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def on_failed(self, callback: FailureCallback) -> None:
        """Register a callback for jobs that reach terminal failure."""
        self._failure_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Submission side
    # ------------------------------------------------------------------

    async def enqueue(self, document: Union[Document, JobPayload]) -> str:
        """
        Add a job and return its id without waiting for extraction.

        Raises:
            QueueClosedError: If the queue is not open
        """
        if isinstance(document, Document):
            payload = JobPayload(
                data=document.payload, filename=document.filename, format=document.format
            )
        else:
            payload = document

        async with self._condition:
            if not self._open:
                raise QueueClosedError("Extraction queue is not accepting jobs")
            job = ExtractionJob(
                payload=payload,
                max_attempts=self.policy.max_attempts,
                available_at=self._clock(),
            )
            self._jobs[job.id] = job
            self._order.append(job.id)
            self._condition.notify_all()

        logger.info(f"Queued extraction job {job.id} for '{payload.filename}'")
        return job.id

    def get(self, job_id: str) -> ExtractionJob:
        """Snapshot of a job."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy(deep=True)

    def status(self, job_id: str) -> JobStatusReport:
        return JobStatusReport.from_job(self.get(job_id))

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> ExtractionJob:
        """
        Block until a job is terminal.

        Raises:
            JobNotFoundError: If the job is unknown or was purged before the waiter resumed
            asyncio.TimeoutError: On timeout
        """
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)

        async def _wait() -> None:
            async with self._condition:
                await self._condition.wait_for(lambda: self._is_settled(job_id))

        await asyncio.wait_for(_wait(), timeout)
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy(deep=True)

    def _is_settled(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is None or job.status.is_terminal

    async def join(self, timeout: Optional[float] = None) -> None:
        """Block until every job is terminal."""

        async def _wait() -> None:
            async with self._condition:
                await self._condition.wait_for(
                    lambda: all(job.status.is_terminal for job in self._jobs.values())
                )

        await asyncio.wait_for(_wait(), timeout)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def dequeue(
        self, worker_id: str, timeout: Optional[float] = None
    ) -> Optional[ExtractionJob]:
        """
        Claim the oldest job whose backoff has elapsed.

        The claim marks the job active and counts the attempt atomically.
        Returns None when the queue closes or the timeout passes first.
        """
        deadline = None if timeout is None else self._clock() + timeout

        async with self._condition:
            while True:
                if not self._open:
                    return None

                now = self._clock()
                next_ready: Optional[float] = None
                for job_id in self._order:
                    job = self._jobs[job_id]
                    if job.status != JobStatus.QUEUED:
                        continue
                    if job.available_at <= now:
                        job.status = JobStatus.ACTIVE
                        job.attempts += 1
                        job.worker_id = worker_id
                        logger.info(
                            f"Worker {worker_id} claimed job {job.id} "
                            f"(attempt {job.attempts}/{job.max_attempts})"
                        )
                        return job.model_copy(deep=True)
                    if next_ready is None or job.available_at < next_ready:
                        next_ready = job.available_at

                wait: Optional[float] = None
                if next_ready is not None:
                    wait = max(next_ready - now, 0.0)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    await asyncio.wait_for(self._condition.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, job_id: str, worker_id: str, result: ExtractionResult) -> None:
        async with self._condition:
            job = self._claimed(job_id, worker_id)
            job.status = JobStatus.COMPLETED
            job.result = result
            job.finished_at = utcnow()
            job.worker_id = None
            self._order.remove(job_id)
            self._condition.notify_all()

        with LogContext(job_id=job_id):
            logger.info(
                f"Job {job_id} completed: {len(result.extracted_text)} chars, "
                f"~{result.estimated_scene_count} scenes"
            )

    async def fail(self, job_id: str, worker_id: str, error: Union[BaseException, str]) -> ExtractionJob:
        """
        Record a failed attempt and either requeue with backoff or fail terminally.

        Returns:
            Snapshot of the job after the decision
        """
        reason = error if isinstance(error, str) else compact_error(error)

        async with self._condition:
            job = self._claimed(job_id, worker_id)
            job.last_error = reason
            job.error_history.append(f"attempt {job.attempts}: {reason}")
            job.worker_id = None

            if self.policy.can_retry(job.attempts):
                delay = self.policy.delay_for(job.attempts)
                job.status = JobStatus.QUEUED
                job.available_at = self._clock() + delay
                terminal = False
            else:
                job.status = JobStatus.FAILED
                job.finished_at = utcnow()
                self._order.remove(job_id)
                terminal = True
            self._condition.notify_all()
            snapshot = job.model_copy(deep=True)

        with LogContext(job_id=job_id):
            if terminal:
                logger.error(f"Job {job_id} failed after {snapshot.attempts} attempts: {reason}")
            else:
                logger.warning(
                    f"Job {job_id} attempt {snapshot.attempts} failed, requeued in "
                    f"{self.policy.delay_for(snapshot.attempts):.1f}s: {reason}"
                )

        if terminal:
            await self._notify_failed(snapshot)
        return snapshot

    def _claimed(self, job_id: str, worker_id: str) -> ExtractionJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.ACTIVE or job.worker_id != worker_id:
            raise ExtractionError(
                f"Job {job_id} is not held by worker {worker_id}",
                {"status": job.status.value, "worker_id": job.worker_id},
            )
        return job

    async def _notify_failed(self, job: ExtractionJob) -> None:
        for callback in self._failure_callbacks:
            try:
                outcome = callback(job)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Failure callback for job {job.id} raised: {e}")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def purge_expired(self) -> int:
        """Drop terminal jobs older than the retention window."""
        cutoff = utcnow() - self.retention
        async with self._condition:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status.is_terminal and job.finished_at and job.finished_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            logger.info(f"Purged {len(expired)} expired extraction jobs")
        return len(expired)

    def _count(self, status: JobStatus) -> int:
        return sum(1 for job in self._jobs.values() if job.status == status)

    def stats(self) -> Dict[str, int]:
        counts = {status.value: self._count(status) for status in JobStatus}
        counts["total"] = len(self._jobs)
        return counts
