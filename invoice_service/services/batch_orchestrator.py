from typing import Any, List, Optional, Sequence
from invoice_service.core.config import get_settings
from invoice_service.core.exceptions import BatchError, PipelineError
from invoice_service.core.monitoring import ACTIVE_JOBS, BATCH_FAILURES, ITEMS_PROCESSED
from invoice_service.models.batch import (
    BatchRecord,
    BatchResult,
    FailedItem,
    ItemStatus,
    ProcessedResult,
    ProcessingItem,
)
from invoice_service.services.event_publisher import (
    BATCH_COMPLETED_TOPIC,
    JOB_COMPLETED_TOPIC,
    STATUS_TOPIC,
    EventPublisher,
)
from invoice_service.services.extraction_service import DocumentExtractionClient
from invoice_service.services.job_registry import JobRegistry, JobState, ProcessingJob
from invoice_service.services.normalization_service import TextNormalizationClient
import asyncio
import logging
import time

logger = logging.getLogger(__name__)
settings = get_settings()

class BatchOrchestrator:
    """Drive a processing job through extraction and normalization.

    Batches run one after another. Inside a batch every item is submitted to
    the extraction service at once, and every successfully extracted item is
    then submitted to the normalization service at once; each fan-out waits
    for all of its items to settle. A failing item is recorded and never
    cancels its siblings, and an unexpected error in one batch only fails
    that batch. ``run`` always returns a :class:`BatchResult`.
    """

    def __init__(
        self,
        extraction_client: DocumentExtractionClient,
        normalization_client: TextNormalizationClient,
        publisher: EventPublisher,
        registry: Optional[JobRegistry] = None,
        drain_timeout: Optional[float] = None,
        settle_delay: Optional[float] = None
    ):
        self.extraction_client = extraction_client
        self.normalization_client = normalization_client
        self.publisher = publisher
        self.registry = registry
        self.drain_timeout = settings.EVENT_DRAIN_TIMEOUT if drain_timeout is None else drain_timeout
        self.settle_delay = settings.BATCH_SETTLE_DELAY if settle_delay is None else settle_delay

    async def run(self, input_ids: Sequence[str], batch_size: Optional[int] = None) -> BatchResult:
        if batch_size is None:
            batch_size = settings.BATCH_SIZE
        if self.registry is not None:
            job = self.registry.create(input_ids, batch_size)
        else:
            job = ProcessingJob(input_ids, batch_size)
        return await self.run_job(job)

    async def run_job(self, job: ProcessingJob) -> BatchResult:
        job.status_store.clear()
        job.state = JobState.RUNNING
        ACTIVE_JOBS.inc()
        started = time.monotonic()
        logger.info(
            f"Starting job {job.job_id}: {len(job.input_ids)} items in "
            f"{job.total_batches} batches of up to {job.batch_size}"
        )

        results: List[ProcessedResult] = []
        failed_urls: List[FailedItem] = []
        try:
            for batch_number, refs in enumerate(job.partition(), start=1):
                record = await self._process_batch(job, batch_number, refs)
                results.extend(record.results)
                failed_urls.extend(record.failed_urls)

                logger.info(
                    f"Batch {batch_number}/{job.total_batches} of job {job.job_id} completed. "
                    f"Processed: {len(record.results)}, Failed: {len(record.failed_urls)}"
                )
                self._publish_batch_completed(job, record)

                if batch_number < job.total_batches:
                    await self._settle()
        finally:
            job.state = JobState.COMPLETED
            ACTIVE_JOBS.dec()

        result = BatchResult(
            results=results,
            failed_urls=failed_urls,
            total_batches=job.total_batches,
            batch_size=job.batch_size
        )
        self.publisher.publish(JOB_COMPLETED_TOPIC, {
            "jobId": job.job_id,
            "totalBatches": job.total_batches,
            "batchSize": job.batch_size,
            "totalProcessed": len(results),
            "totalFailed": len(failed_urls),
        })
        logger.info(
            f"Job {job.job_id} finished in {time.monotonic() - started:.2f}s. "
            f"Processed: {len(results)}, Failed: {len(failed_urls)}"
        )
        if failed_urls:
            logger.info(f"Failed files: {', '.join(f.url for f in failed_urls)}")
        return result

    async def _process_batch(self, job: ProcessingJob, batch_number: int, refs: List[str]) -> BatchRecord:
        record = BatchRecord(batch_number=batch_number)
        try:
            await self._run_stages(job, record, refs)
        except Exception as e:
            error = BatchError(f"Batch {batch_number} failed: {str(e)}", batch_number)
            logger.error(f"Batch processing error in job {job.job_id}: {e}", exc_info=True)
            BATCH_FAILURES.inc()
            self._fail_batch(job, record, refs, error)
        return record

    async def _run_stages(self, job: ProcessingJob, record: BatchRecord, refs: List[str]):
        record.items = [
            ProcessingItem.create(ref, record.batch_number, job.total_batches)
            for ref in refs
        ]
        for item in record.items:
            self._record(job, item)
        for item in record.items:
            item.mark_reading()
            self._record(job, item)

        # Extraction fan-out
        texts = await asyncio.gather(
            *(self._extract_item(job, item) for item in record.items),
            return_exceptions=True
        )
        self._raise_escaped(texts)
        record.texts = list(texts)

        # Normalization fan-out over the items that produced text
        extracted = [
            (item, text) for item, text in zip(record.items, record.texts)
            if text is not None
        ]
        outcomes = await asyncio.gather(
            *(self._normalize_item(job, item, text) for item, text in extracted),
            return_exceptions=True
        )
        self._raise_escaped(outcomes)
        self._collect(record)

    @staticmethod
    def _collect(record: BatchRecord):
        """Split the batch's items into results and failures, in input order"""
        record.results = []
        record.failed_urls = []
        for index, item in enumerate(record.items):
            if item.status is ItemStatus.PROCESSED:
                record.results.append(ProcessedResult(
                    file_ref=item.id,
                    file_name=item.file_name,
                    data=item.extracted_data,
                    raw_text=record.texts[index] if index < len(record.texts) else None
                ))
            else:
                record.failed_urls.append(FailedItem(
                    url=item.id,
                    error=item.error or "Unknown error",
                    stage=item.stage
                ))

    async def _extract_item(self, job: ProcessingJob, item: ProcessingItem) -> Optional[str]:
        try:
            text = await self.extraction_client.extract(item.id)
        except PipelineError as e:
            self._fail_item(job, item, e.message)
            return None
        except Exception as e:
            logger.error(f"Unexpected extraction error for {item.id}: {e}", exc_info=True)
            self._fail_item(job, item, str(e) or e.__class__.__name__)
            return None

        item.mark_analyzing()
        self._record(job, item)
        return text

    async def _normalize_item(self, job: ProcessingJob, item: ProcessingItem, text: str):
        try:
            data = await self.normalization_client.normalize(text)
        except PipelineError as e:
            self._fail_item(job, item, e.message)
            return
        except Exception as e:
            logger.error(f"Unexpected normalization error for {item.id}: {e}", exc_info=True)
            self._fail_item(job, item, str(e) or e.__class__.__name__)
            return

        item.mark_completed(data)
        self._record(job, item)
        ITEMS_PROCESSED.labels(outcome="processed").inc()

    def _fail_item(self, job: ProcessingJob, item: ProcessingItem, message: str,
                   status: ItemStatus = ItemStatus.ERROR):
        logger.warning(f"Item {item.id} failed during {item.stage.value}: {message}")
        item.mark_failed(message, status)
        self._record(job, item)
        ITEMS_PROCESSED.labels(outcome=status.value.lower()).inc()

    def _fail_batch(self, job: ProcessingJob, record: BatchRecord, refs: List[str], error: BatchError):
        if not record.items:
            record.items = [
                ProcessingItem.create(ref, record.batch_number, job.total_batches)
                for ref in refs
            ]
        # Items that already finished keep their outcome
        for item in record.items:
            if not item.is_terminal:
                self._fail_item(job, item, error.message, ItemStatus.FAILED)
        self._collect(record)

    @staticmethod
    def _raise_escaped(outcomes: Sequence[Any]):
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    def _record(self, job: ProcessingJob, item: ProcessingItem):
        status = item.to_status()
        job.status_store.set(item.id, status)
        self.publisher.publish(STATUS_TOPIC, {
            "jobId": job.job_id,
            "fileRef": item.id,
            "status": status.model_dump(mode="json", by_alias=True),
        })
        logger.debug(f"{item.id}: {item.status.value}/{item.stage.value}")

    def _publish_batch_completed(self, job: ProcessingJob, record: BatchRecord):
        self.publisher.publish(BATCH_COMPLETED_TOPIC, {
            "jobId": job.job_id,
            "batchNumber": record.batch_number,
            "totalBatches": job.total_batches,
            "results": [r.model_dump(mode="json", by_alias=True) for r in record.results],
            "failedUrls": [f.model_dump(mode="json", by_alias=True) for f in record.failed_urls],
        })

    async def _settle(self):
        await self.publisher.drain(self.drain_timeout)
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)
