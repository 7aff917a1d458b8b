from fastapi import APIRouter, Depends
from invoice_service.core.dependencies import get_event_publisher, get_job_registry
from invoice_service.services.event_publisher import EventPublisher
from invoice_service.services.job_registry import JobRegistry

router = APIRouter()

@router.get("/health")
async def health_check(
    registry: JobRegistry = Depends(get_job_registry),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Report liveness and current load"""
    return {
        "status": "healthy",
        "activeJobs": registry.active_count(),
        "observers": publisher.subscriber_count
    }
