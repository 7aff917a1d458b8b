from pydantic import Field
from typing import List, Optional
from enum import Enum
from urllib.parse import urlparse, unquote
import posixpath
import time

from invoice_service.core.exceptions import InvalidTransitionError
from invoice_service.models.base import CamelModel
from invoice_service.models.invoice import InvoiceRecord

class ItemStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    ERROR = "Error"
    FAILED = "Failed"

class ItemStage(str, Enum):
    READING = "Reading"
    ANALYZING = "Analyzing"
    COMPLETED = "Completed"
    ERROR = "Error"

class ServiceStage(str, Enum):
    EXTRACTION = "Extraction"
    NORMALIZATION = "Normalization"

TERMINAL_STATUSES = frozenset({ItemStatus.PROCESSED, ItemStatus.ERROR, ItemStatus.FAILED})

STAGE_ORDER = {
    ItemStage.READING: 0,
    ItemStage.ANALYZING: 1,
    ItemStage.COMPLETED: 2,
    ItemStage.ERROR: 3,
}


def file_name_from_ref(ref: str) -> str:
    """Display name for a file reference: the last URL path segment"""
    path = unquote(urlparse(ref).path or "")
    name = posixpath.basename(path.rstrip("/"))
    return name or ref


class ProcessingStatus(CamelModel):
    """Snapshot of one item as kept in the status store"""
    status: ItemStatus = ItemStatus.PENDING
    stage: ItemStage = ItemStage.READING
    current_stage: Optional[ServiceStage] = None
    file_name: Optional[str] = None
    batch_number: Optional[int] = None
    total_batches: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None
    extracted_data: Optional[InvoiceRecord] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ProcessingItem(ProcessingStatus):
    """One file moving through extraction and normalization.

    Transitions only move forward: ``Reading -> Analyzing -> Completed``, or
    jump to ``Error`` from any non-terminal state. Anything else raises
    :class:`InvalidTransitionError`.
    """
    id: str

    @classmethod
    def create(cls, ref: str, batch_number: int, total_batches: int) -> "ProcessingItem":
        return cls(
            id=ref,
            file_name=file_name_from_ref(ref),
            batch_number=batch_number,
            total_batches=total_batches,
        )

    def mark_reading(self):
        self._transition(ItemStatus.PROCESSING, ItemStage.READING)
        self.current_stage = ServiceStage.EXTRACTION
        self.start_time = time.monotonic()

    def mark_analyzing(self):
        self._transition(ItemStatus.PROCESSING, ItemStage.ANALYZING)
        self.current_stage = ServiceStage.NORMALIZATION

    def mark_completed(self, data: InvoiceRecord):
        self._transition(ItemStatus.PROCESSED, ItemStage.COMPLETED)
        self.extracted_data = data
        self.error = None
        self._finish()

    def mark_failed(self, error: str, status: ItemStatus = ItemStatus.ERROR):
        self._transition(status, ItemStage.ERROR)
        self.error = error
        self.extracted_data = None
        self._finish()

    def to_status(self) -> ProcessingStatus:
        return ProcessingStatus.model_validate(self.model_dump(exclude={"id"}))

    def _transition(self, status: ItemStatus, stage: ItemStage):
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Item {self.id} is already {self.status.value}"
            )
        if stage is not ItemStage.ERROR and STAGE_ORDER[stage] < STAGE_ORDER[self.stage]:
            raise InvalidTransitionError(
                f"Item {self.id} cannot move from {self.stage.value} back to {stage.value}"
            )
        self.status = status
        self.stage = stage

    def _finish(self):
        self.current_stage = None
        self.end_time = time.monotonic()
        if self.start_time is None:
            self.start_time = self.end_time
        self.duration = self.end_time - self.start_time


class ProcessedResult(CamelModel):
    file_ref: str
    file_name: str
    data: InvoiceRecord
    raw_text: Optional[str] = None

class FailedItem(CamelModel):
    url: str
    error: str
    stage: ItemStage = ItemStage.ERROR

class BatchRecord(CamelModel):
    batch_number: int
    items: List[ProcessingItem] = Field(default_factory=list)
    # Extracted text per item position, None where extraction failed
    texts: List[Optional[str]] = Field(default_factory=list)
    results: List[ProcessedResult] = Field(default_factory=list)
    failed_urls: List[FailedItem] = Field(default_factory=list)

class BatchResult(CamelModel):
    results: List[ProcessedResult] = Field(default_factory=list)
    failed_urls: List[FailedItem] = Field(default_factory=list)
    total_batches: int
    batch_size: int

    @property
    def success(self) -> bool:
        return not self.failed_urls
