from pydantic import Field
from typing import Any, Dict, List, Optional
from invoice_service.models.base import CamelModel
from invoice_service.models.batch import FailedItem, ProcessedResult, ProcessingStatus

class ProcessRequest(CamelModel):
    """Request body for processing a batch of file references"""
    file_refs: List[Any] = Field(default_factory=list)
    batch_size: Optional[int] = Field(None, ge=1)

class ProcessResponse(CamelModel):
    success: bool
    job_id: str
    results: List[ProcessedResult]
    failed_urls: List[FailedItem]
    total_processed: int
    total_failed: int
    total_invoices: int
    total_batches: int
    batch_size: int

class JobStatusResponse(CamelModel):
    job_id: Optional[str] = None
    state: Optional[str] = None
    statuses: Dict[str, ProcessingStatus] = Field(default_factory=dict)

class ClearResponse(CamelModel):
    success: bool = True
