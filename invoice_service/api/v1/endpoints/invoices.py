from fastapi import APIRouter, HTTPException, Query, Depends, Request
from fastapi.responses import StreamingResponse
from typing import Optional
from invoice_service.core.config import get_settings
from invoice_service.core.dependencies import (
    get_batch_orchestrator,
    get_event_publisher,
    get_job_registry,
    require_query_token,
    require_token,
)
from invoice_service.core.exceptions import InvalidRequestError, JobNotFoundError
from invoice_service.models.processing import (
    ClearResponse,
    JobStatusResponse,
    ProcessRequest,
    ProcessResponse,
)
from invoice_service.services.batch_orchestrator import BatchOrchestrator
from invoice_service.services.event_publisher import JOB_COMPLETED_TOPIC, EventPublisher
from invoice_service.services.job_registry import JobRegistry, JobState, ProcessingJob
import json
import logging

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter()

def _resolve_job(registry: JobRegistry, job_id: Optional[str]) -> Optional[ProcessingJob]:
    if not job_id:
        return registry.latest()
    job = registry.get(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job

def _sse(message: dict) -> str:
    return f"data: {json.dumps(message)}\n\n"

@router.post("/process", response_model=ProcessResponse, dependencies=[Depends(require_token)])
async def process_invoices(
    request: ProcessRequest,
    orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator),
    registry: JobRegistry = Depends(get_job_registry),
):
    """
    Process a list of invoice file references in sequential batches
    """
    file_refs = [
        ref.strip() for ref in request.file_refs
        if isinstance(ref, str) and ref.strip()
    ]
    if not file_refs:
        raise InvalidRequestError("File URLs array is required")

    unique_refs = list(dict.fromkeys(file_refs))
    if len(unique_refs) < len(file_refs):
        logger.warning(f"Dropped {len(file_refs) - len(unique_refs)} duplicate file references")

    batch_size = request.batch_size or settings.BATCH_SIZE
    if batch_size > settings.MAX_BATCH_SIZE:
        raise InvalidRequestError(
            f"batchSize must not exceed {settings.MAX_BATCH_SIZE}",
            metadata={"batch_size": batch_size}
        )

    job = registry.create(unique_refs, batch_size)
    try:
        result = await orchestrator.run_job(job)
    except Exception as e:
        logger.error(f"Error processing job {job.job_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="Failed to process invoices"
        )

    return ProcessResponse(
        success=result.success,
        job_id=job.job_id,
        results=result.results,
        failed_urls=result.failed_urls,
        total_processed=len(result.results),
        total_failed=len(result.failed_urls),
        total_invoices=len(unique_refs),
        total_batches=result.total_batches,
        batch_size=result.batch_size
    )

@router.get("/status", response_model=JobStatusResponse, dependencies=[Depends(require_token)])
async def get_status(
    job_id: Optional[str] = Query(None, description="Job to report on, defaults to the latest"),
    registry: JobRegistry = Depends(get_job_registry),
):
    """
    Get the current per-file status snapshot of a processing job
    """
    job = _resolve_job(registry, job_id)
    if job is None:
        return JobStatusResponse()
    return JobStatusResponse(
        job_id=job.job_id,
        state=job.state.value,
        statuses=job.status_store.snapshot()
    )

@router.get("/status/stream", dependencies=[Depends(require_query_token)])
async def stream_status(
    request: Request,
    job_id: Optional[str] = Query(None),
    publisher: EventPublisher = Depends(get_event_publisher),
    registry: JobRegistry = Depends(get_job_registry),
):
    """
    Stream status transitions and batch completions as server-sent events.
    A stream scoped to a job ends once that job has completed.
    """
    job = _resolve_job(registry, job_id)

    async def event_generator():
        subscription = publisher.subscribe()
        try:
            yield _sse({"type": "connected"})
            if job is not None:
                yield _sse({
                    "type": "status",
                    "jobId": job.job_id,
                    "status": job.status_store.as_dict()
                })
            if job_id and job.state is JobState.COMPLETED:
                return
            async for event in subscription:
                if job_id and event.payload.get("jobId") != job_id:
                    continue
                yield _sse(event.to_message())
                if job_id and event.topic == JOB_COMPLETED_TOPIC:
                    break
                if await request.is_disconnected():
                    break
        finally:
            subscription.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )

@router.post("/status/clear", response_model=ClearResponse, dependencies=[Depends(require_token)])
async def clear_status(
    registry: JobRegistry = Depends(get_job_registry),
):
    """
    Reset the status stores between jobs
    """
    registry.clear()
    return ClearResponse(success=True)
