"""
Extraction workers.

A worker is an asyncio task that loops: claim a job, run the extraction in
an executor so the event loop stays responsive, report the outcome. The
extraction itself (extract_job_payload) is a plain module-level function so
it can be shipped to a process pool.
"""

import asyncio
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Callable, List, Optional

from scenebreak.config import Settings, get_settings
from scenebreak.extraction.pdf_text import extract_pdf_text
from scenebreak.extraction.queue import ExtractionQueue
from scenebreak.models import DocumentFormat, ExtractionJob, ExtractionResult, JobPayload
from scenebreak.parsing.format_parser import count_fdx_headings, render_fdx_text
from scenebreak.parsing.headings import count_headings
from scenebreak.parsing.normalize import decode_text, normalize_text
from scenebreak.parsing.validator import DocumentValidator
from scenebreak.utils.logging import LogContext, get_logger, log_performance

logger = get_logger(__name__)

Extractor = Callable[[JobPayload], ExtractionResult]


def extract_job_payload(payload: JobPayload) -> ExtractionResult:
    """
    Extract text and estimate the scene count for one job payload.

    Has no side effects, so repeating it after a requeue is safe.
    """
    warnings: List[str] = []
    page_count: Optional[int] = None
    scene_count: Optional[int] = None

    if payload.format == DocumentFormat.PDF:
        pdf = extract_pdf_text(payload.data, payload.filename)
        text, page_count = pdf.text, pdf.page_count
        if DocumentValidator.looks_scanned(text, len(payload.data)):
            warnings.append(
                "Very little text relative to file size; this may be a scanned PDF (use OCR first)"
            )
    elif payload.format == DocumentFormat.FINAL_DRAFT:
        text = render_fdx_text(payload.data)
        scene_count = count_fdx_headings(payload.data)
    else:
        text = normalize_text(decode_text(payload.data))

    return ExtractionResult(
        extracted_text=text,
        estimated_scene_count=scene_count if scene_count is not None else count_headings(text),
        page_count=page_count,
        warnings=warnings,
    )


class ExtractionWorker:
    """One consumer of the extraction queue."""

    def __init__(
        self,
        queue: ExtractionQueue,
        worker_id: str,
        extractor: Extractor = extract_job_payload,
        executor: Optional[Executor] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.queue = queue
        self.worker_id = worker_id
        self.extractor = extractor
        self.executor = executor
        self.poll_interval = poll_interval
        self.processed = 0
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        """Finish the current job, then exit the loop."""
        self._stopping.set()

    async def run(self) -> None:
        logger.debug(f"Worker {self.worker_id} started")
        while not self._stopping.is_set():
            job = await self.queue.dequeue(self.worker_id, timeout=self.poll_interval)
            if job is None:
                if not self.queue.is_open:
                    break
                continue
            await self.process(job)
        logger.debug(f"Worker {self.worker_id} stopped after {self.processed} jobs")

    @log_performance
    async def process(self, job: ExtractionJob) -> None:
        """Run one claimed job and report the outcome to the queue."""
        loop = asyncio.get_running_loop()
        with LogContext(job_id=job.id, worker_id=self.worker_id):
            try:
                result = await loop.run_in_executor(self.executor, self.extractor, job.payload)
            except Exception as e:
                await self.queue.fail(job.id, self.worker_id, e)
            else:
                await self.queue.complete(job.id, self.worker_id, result)
            finally:
                self.processed += 1


class WorkerPool:
    """
    N workers sharing one executor.

    Threads by default; a process pool when `use_processes` is set, for
    documents large enough that extraction should not share the GIL.
    """

    def __init__(
        self,
        queue: ExtractionQueue,
        size: Optional[int] = None,
        use_processes: Optional[bool] = None,
        extractor: Extractor = extract_job_payload,
        poll_interval: float = 0.5,
        purge_interval: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.queue = queue
        self.size = size if size is not None else settings.extraction_workers
        self.use_processes = (
            use_processes if use_processes is not None else settings.extraction_use_processes
        )
        self.extractor = extractor
        self.poll_interval = poll_interval
        # Non-positive disables housekeeping
        self.purge_interval = (
            purge_interval if purge_interval is not None else settings.job_purge_interval_seconds
        )
        self.workers: List[ExtractionWorker] = []
        self._tasks: List[asyncio.Task] = []
        self._housekeeping: Optional[asyncio.Task] = None
        self._executor: Optional[Executor] = None

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        executor_cls = ProcessPoolExecutor if self.use_processes else ThreadPoolExecutor
        self._executor = executor_cls(max_workers=self.size)
        for index in range(self.size):
            worker = ExtractionWorker(
                self.queue,
                worker_id=f"worker-{index + 1}",
                extractor=self.extractor,
                executor=self._executor,
                poll_interval=self.poll_interval,
            )
            self.workers.append(worker)
            self._tasks.append(asyncio.create_task(worker.run(), name=worker.worker_id))
        if self.purge_interval > 0:
            self._housekeeping = asyncio.create_task(self._purge_loop(), name="queue-housekeeping")
        logger.info(
            f"Started {self.size} extraction workers "
            f"({'processes' if self.use_processes else 'threads'})"
        )

    async def _purge_loop(self) -> None:
        """Drop expired terminal jobs from the queue on an interval."""
        while self.queue.is_open:
            await asyncio.sleep(self.purge_interval)
            await self.queue.purge_expired()

    async def stop(self) -> None:
        """Let in-flight jobs finish, then shut the executor down."""
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            await asyncio.gather(self._housekeeping, return_exceptions=True)
            self._housekeeping = None
        for worker in self.workers:
            worker.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        processed = sum(worker.processed for worker in self.workers)
        self._tasks.clear()
        self.workers.clear()
        self._executor = None
        logger.info(f"Extraction workers stopped ({processed} jobs processed)")

    async def __aenter__(self) -> "WorkerPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
