"""Processing job submission with awaitable handles."""

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Literal
from uuid import UUID

from backend.app.docs.errors import AlreadyProcessingError
from backend.app.docs.processing import DocumentProcessor
from backend.app.models.docs import ProcessingResult

logger = logging.getLogger(__name__)

JobKind = Literal["process", "reprocess"]

ProcessorFactory = Callable[[], AbstractAsyncContextManager[DocumentProcessor]]


class ProcessingJob:
    """Handle for a submitted processing job."""

    def __init__(self, document_id: UUID, kind: JobKind, task: "asyncio.Task[ProcessingResult]"):
        self.document_id = document_id
        self.kind = kind
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> ProcessingResult:
        """Wait for the job to finish.

        ``process`` jobs always return a result. ``reprocess`` jobs re-raise
        the errors ``DocumentProcessor.reprocess`` raises.
        """
        return await asyncio.shield(self._task)


class ProcessingJobRunner:
    """Runs processing jobs as background tasks, at most one per document.

    Each job opens its own processor (and with it its own DB session) via
    ``processor_factory``, so it keeps running after the request that
    submitted it has returned.
    """

    def __init__(self, processor_factory: ProcessorFactory) -> None:
        self._processor_factory = processor_factory
        self._jobs: dict[UUID, ProcessingJob] = {}

    def submit(self, document_id: UUID, content: str) -> ProcessingJob:
        """Start processing ``content`` for a document.

        Raises:
            AlreadyProcessingError: If a job for the document is still running
        """

        async def run() -> ProcessingResult:
            async with self._processor_factory() as processor:
                return await processor.process(document_id, content)

        return self._start(document_id, "process", run)

    def submit_reprocess(self, document_id: UUID) -> ProcessingJob:
        """Start reprocessing a document from its stored content.

        Raises:
            AlreadyProcessingError: If a job for the document is still running
        """

        async def run() -> ProcessingResult:
            async with self._processor_factory() as processor:
                return await processor.reprocess(document_id)

        return self._start(document_id, "reprocess", run)

    def get(self, document_id: UUID) -> ProcessingJob | None:
        """Most recent job submitted for a document."""
        return self._jobs.get(document_id)

    def active_jobs(self) -> list[ProcessingJob]:
        """Jobs that have not finished yet."""
        return [job for job in self._jobs.values() if not job.done()]

    async def shutdown(self) -> None:
        """Cancel outstanding jobs and wait for them to unwind."""
        active = self.active_jobs()
        for job in active:
            job._task.cancel()

        if active:
            logger.info(f"Cancelling {len(active)} processing job(s)")
            await asyncio.gather(*(job._task for job in active), return_exceptions=True)

    def _start(self, document_id: UUID, kind: JobKind, run) -> ProcessingJob:  # type: ignore[no-untyped-def]
        existing = self._jobs.get(document_id)
        if existing is not None and not existing.done():
            raise AlreadyProcessingError(document_id)

        task = asyncio.create_task(run(), name=f"{kind}:{document_id}")
        task.add_done_callback(self._log_outcome)

        job = ProcessingJob(document_id, kind, task)
        self._jobs[document_id] = job
        logger.info(f"[{document_id}] Submitted {kind} job")
        return job

    @staticmethod
    def _log_outcome(task: "asyncio.Task[ProcessingResult]") -> None:
        if task.cancelled():
            logger.warning(f"Job {task.get_name()} cancelled")
            return

        error = task.exception()
        if error is not None:
            logger.error(f"Job {task.get_name()} raised {type(error).__name__}: {error}")
            return

        result = task.result()
        if result.success:
            logger.info(f"Job {task.get_name()} completed with {result.chunks_created} chunks")
        else:
            logger.warning(f"Job {task.get_name()} failed: {result.error}")
