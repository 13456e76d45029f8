import asyncio
import logging
from typing import Optional

from doubt_solver.config import EXTRACTION_WORKERS
from doubt_solver.database.document_crud import DocumentRepository
from doubt_solver.errors import AppError
from doubt_solver.services.extraction import TextExtractor
from doubt_solver.services.storage import S3Storage

logger = logging.getLogger(__name__)

RECOVERABLE_STATUSES = ["pending", "processing"]


class DocumentProcessor:
    """Runs one extraction job and records its outcome on the document."""

    def __init__(self, documents: DocumentRepository, extractor: TextExtractor, storage: S3Storage):
        self.documents = documents
        self.extractor = extractor
        self.storage = storage

    async def process(self, document_id: str) -> Optional[str]:
        doc = await self.documents.find_by_id(document_id)
        if doc is None:
            logger.warning("Document %s vanished before processing", document_id)
            return None
        if not await self.documents.transition(document_id, "processing"):
            logger.info("Document %s is already %s, skipping", document_id, doc.processing_status)
            return doc.processing_status

        logger.info("Processing document %s (%s)", document_id, doc.file_type)
        try:
            url = self.storage.presigned_url(doc.storage_key)
            text = await self.extractor.extract(doc.file_type, url)
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e) or e.__class__.__name__
            logger.exception("Processing failed for document %s", document_id)
            await self.documents.transition(document_id, "failed", processing_error=message)
            return "failed"

        await self.documents.transition(document_id, "completed", extracted_text=text, processing_error=None)
        logger.info("Document %s processed, %d characters extracted", document_id, len(text))
        return "completed"


class ExtractionQueue:
    """In-process job queue feeding a fixed pool of extraction workers."""

    def __init__(self, processor: DocumentProcessor, workers: int = EXTRACTION_WORKERS):
        self.processor = processor
        self.workers = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: set[str] = set()
        self._tasks: list[asyncio.Task] = []

    @property
    def pending_jobs(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def submit(self, document_id: str) -> bool:
        if document_id in self._queued:
            return False
        self._queued.add(document_id)
        self._queue.put_nowait(document_id)
        return True

    async def recover(self) -> int:
        """Re-queue documents left pending or processing by a previous run."""
        ids = await self.processor.documents.list_ids_by_status(RECOVERABLE_STATUSES)
        submitted = sum(1 for doc_id in ids if self.submit(doc_id))
        if submitted:
            logger.info("Re-queued %d unfinished extraction jobs", submitted)
        return submitted

    async def start(self):
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"extraction-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("Started %d extraction workers", self.workers)

    async def join(self):
        await self._queue.join()

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self, n: int):
        while True:
            document_id = await self._queue.get()
            try:
                await self.processor.process(document_id)
            except Exception:
                logger.exception("Extraction worker %d crashed on document %s", n, document_id)
            finally:
                self._queued.discard(document_id)
                self._queue.task_done()
